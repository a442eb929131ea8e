"""
Unit tests for SDK layer.

Tests the asset and distillation entry points end to end against a
temporary database, plus the OpenAI image backend.
"""

import os
import re
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest

from credit_meter.config.loader import MeterConfig
from credit_meter.core.errors import GenerationError, InsufficientCreditsError
from credit_meter.core.fingerprint import asset_fingerprint
from credit_meter.sdk.assets import (
    ASSET_PROMPTS,
    AssetRequest,
    PlaceholderImageGenerator,
    base36,
    build_prompt,
    new_asset_id,
)
from credit_meter.sdk.context import build_context
from credit_meter.sdk.events import (
    HEURISTIC_CONFIDENCE,
    DistillationRequest,
    LifeEvent,
    actor_scope,
    new_event_id,
)
from credit_meter.sdk.openai_client import OpenAIImageGenerator


class SdkTestCase:

    image_generator = None

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.meter = build_context(
            MeterConfig.default(db_path=self.db_path), image_generator=self.image_generator
        )

    def teardown_method(self):
        self.meter.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestAssetService(SdkTestCase):
    """Test metered asset generation."""

    def test_generate_then_reuse(self):
        request = AssetRequest(
            asset_kind="badge", context_text="7-day meditation streak", size="medium"
        )

        first = self.meter.assets.generate_asset(request)
        assert first.from_cache is False
        assert first.credits_used == 10
        assert first.asset_id.startswith("badge_")
        assert first.asset_location.endswith(f"/generated_assets/{first.asset_id}.png")
        assert self.meter.ledger.current_month_usage() == 10

        second = self.meter.assets.generate_asset(request)
        assert second.from_cache is True
        assert second.credits_used == 0
        assert second.asset_id == first.asset_id
        assert second.asset_location == first.asset_location
        assert self.meter.ledger.current_month_usage() == 10

    @pytest.mark.parametrize("size,cost", [("small", 5), ("medium", 10), ("large", 25)])
    def test_cost_by_size(self, size, cost):
        response = self.meter.assets.generate_asset(
            AssetRequest(asset_kind="orb", context_text="focus", size=size)
        )
        assert response.credits_used == cost

    def test_size_changes_fingerprint(self):
        small = self.meter.assets.generate_asset(
            AssetRequest(asset_kind="icon", context_text="leaf", size="small")
        )
        large = self.meter.assets.generate_asset(
            AssetRequest(asset_kind="icon", context_text="leaf", size="large")
        )
        assert large.from_cache is False
        assert large.asset_id != small.asset_id

    def test_usage_record_metadata(self):
        response = self.meter.assets.generate_asset(
            AssetRequest(asset_kind="avatar", context_text="calm", size="small", actor_id="user-1")
        )
        record = self.meter.ledger.recent_usage()[0]

        assert record.operation_kind == "image"
        assert record.feature_id == "avatar_generation"
        assert record.actor_id == "user-1"
        assert record.metadata["asset_id"] == response.asset_id
        assert record.metadata["size"] == "small"
        assert record.metadata["fingerprint"] == asset_fingerprint(response.prompt_used, "small")

    def test_insufficient_credits(self):
        self.meter.ledger.record_usage("image", 24995, "seed")

        with pytest.raises(InsufficientCreditsError) as excinfo:
            self.meter.assets.generate_asset(
                AssetRequest(asset_kind="background", context_text="dawn", size="large")
            )

        assert excinfo.value.required == 25
        assert excinfo.value.available == 5
        assert self.meter.ledger.current_month_usage() == 24995

    @pytest.mark.parametrize("kwargs,match", [
        ({"asset_kind": "", "context_text": "x"}, "Missing required fields"),
        ({"asset_kind": "badge", "context_text": ""}, "Missing required fields"),
        ({"asset_kind": "poster", "context_text": "x"}, "Unsupported asset kind"),
        ({"asset_kind": "badge", "context_text": "x", "size": "huge"}, "Unsupported size"),
    ])
    def test_invalid_request(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            self.meter.assets.generate_asset(AssetRequest(**kwargs))
        assert self.meter.ledger.current_month_usage() == 0


class TestFailingBackend(SdkTestCase):

    image_generator = Mock()

    def setup_method(self):
        self.image_generator.generate.side_effect = RuntimeError("backend down")
        super().setup_method()

    def test_backend_failure_bills_nothing(self):
        with pytest.raises(GenerationError, match="backend down"):
            self.meter.assets.generate_asset(AssetRequest(asset_kind="badge", context_text="x"))

        assert self.meter.ledger.current_month_usage() == 0
        assert self.meter.cache.stats().entries == 0


class TestPrompts:

    def test_prompt_contains_parts(self):
        prompt = build_prompt("badge", "first sunrise run", ("watercolor",))

        assert prompt.startswith(ASSET_PROMPTS["badge"])
        assert "first sunrise run" in prompt
        assert "#D4AF37" in prompt
        assert prompt.endswith("watercolor")

    def test_prompt_is_deterministic(self):
        assert build_prompt("orb", "calm") == build_prompt("orb", "calm")

    def test_ids(self):
        assert re.fullmatch(r"badge_[0-9a-z]+_[0-9a-f]{8}", new_asset_id("badge"))
        assert re.fullmatch(r"evt_[0-9a-z]+_[0-9a-f]{8}", new_event_id())
        assert new_event_id() != new_event_id()

    def test_base36(self):
        assert base36(0) == "0"
        assert base36(35) == "z"
        assert base36(36) == "10"

    def test_placeholder_location(self):
        generator = PlaceholderImageGenerator(bucket="my-bucket")
        assert generator.generate("prompt", "small", "badge_1") == (
            "https://storage.googleapis.com/my-bucket/generated_assets/badge_1.png"
        )


class TestEventService(SdkTestCase):
    """Test metered context distillation."""

    NOTE = "Had coffee with Sarah this morning, need to follow up tomorrow"

    def test_distill_note(self):
        response = self.meter.events.distill(
            DistillationRequest(raw_text=self.NOTE, input_kind="note_text")
        )
        event = response.event

        assert response.from_cache is False
        assert response.credits_used == 4
        assert event.category == "routine"
        assert "Sarah" in [entity.name for entity in event.entities]
        assert [item.text for item in event.action_items] == ["follow up tomorrow"]
        assert "routine" in event.tags
        assert event.confidence == HEURISTIC_CONFIDENCE
        assert event.input_metadata["input_kind"] == "note_text"
        assert event.input_metadata["character_count"] == len(self.NOTE)
        assert event.id.startswith("evt_")

    def test_repeat_is_cached(self):
        request = DistillationRequest(raw_text=self.NOTE, input_kind="note_text")
        first = self.meter.events.distill(request)
        second = self.meter.events.distill(
            DistillationRequest(raw_text=self.NOTE, input_kind="note_text", complexity="complex")
        )

        assert second.from_cache is True
        assert second.credits_used == 0
        assert second.event.id == first.event.id
        assert self.meter.ledger.current_month_usage() == 4

    @pytest.mark.parametrize("complexity,cost", [("simple", 2), ("standard", 4), ("complex", 8)])
    def test_cost_by_complexity(self, complexity, cost):
        response = self.meter.events.distill(
            DistillationRequest(raw_text="Quiet evening", input_kind="note_text", complexity=complexity)
        )
        assert response.credits_used == cost
        assert self.meter.ledger.recent_usage()[0].feature_id == f"distillation_{complexity}"

    def test_actor_copy_stored(self):
        response = self.meter.events.distill(
            DistillationRequest(raw_text=self.NOTE, input_kind="note_text", actor_id="user-1")
        )
        stored = self.meter.scoped_store.list(actor_scope("user-1"))

        assert len(stored) == 1
        assert stored[0].item_id == response.event.id
        assert LifeEvent.from_dict(stored[0].payload) == response.event

    def test_spatial_hint_and_occurred_at(self):
        response = self.meter.events.distill(
            DistillationRequest(
                raw_text="Walked along the river",
                input_kind="location_context",
                spatial_hint="Riverside Park",
                occurred_at="2025-03-10T08:00:00+00:00",
            )
        )
        assert response.event.category == "location"
        assert response.event.spatial_context == {"location_name": "Riverside Park"}
        assert response.event.occurred_at == "2025-03-10T08:00:00+00:00"

    @pytest.mark.parametrize("kwargs,match", [
        ({"raw_text": "", "input_kind": "note_text"}, "Missing required fields"),
        ({"raw_text": "x", "input_kind": "email"}, "Unsupported input kind"),
        ({"raw_text": "x", "input_kind": "note_text", "complexity": "extreme"}, "Unsupported complexity"),
    ])
    def test_invalid_request(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            self.meter.events.distill(DistillationRequest(**kwargs))


class TestUsageSummary(SdkTestCase):

    def test_summary_reflects_usage(self):
        self.meter.assets.generate_asset(AssetRequest(asset_kind="badge", context_text="x", size="large"))
        summary = self.meter.usage_summary()

        assert summary.monthly_used == 25
        assert summary.monthly_limit == 25000
        assert summary.remaining == 24975
        assert summary.percentage_used == pytest.approx(0.1)


class TestOpenAIImageGenerator:
    """Test the OpenAI image backend."""

    @patch('credit_meter.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        mock_openai_class.return_value = Mock()

        generator = OpenAIImageGenerator(model="dall-e-3")

        assert generator.model == "dall-e-3"
        assert generator.client is mock_openai_class.return_value

    def test_init_missing_model(self):
        with pytest.raises(ValueError, match="model is required"):
            OpenAIImageGenerator(model="", client=Mock())

    @pytest.mark.parametrize("tier,api_size", [
        ("small", "256x256"),
        ("medium", "512x512"),
        ("large", "1024x1024"),
    ])
    def test_generate_returns_url(self, tier, api_size):
        client = Mock()
        client.images.generate.return_value = Mock(data=[Mock(url="https://img.example/1.png")])
        generator = OpenAIImageGenerator(client=client)

        url = generator.generate("a prompt", tier, "badge_1")

        assert url == "https://img.example/1.png"
        client.images.generate.assert_called_once_with(
            model="dall-e-2", prompt="a prompt", size=api_size, n=1
        )

    @pytest.mark.parametrize("tier", ["small", "medium", "large"])
    def test_dall_e_3_always_gets_supported_size(self, tier):
        client = Mock()
        client.images.generate.return_value = Mock(data=[Mock(url="https://img.example/1.png")])
        generator = OpenAIImageGenerator(model="dall-e-3", client=client)

        generator.generate("a prompt", tier, "badge_1")

        assert client.images.generate.call_args.kwargs["size"] == "1024x1024"

    def test_missing_image_data(self):
        client = Mock()
        client.images.generate.return_value = Mock(data=[])
        generator = OpenAIImageGenerator(client=client)

        with pytest.raises(ValueError, match="missing image data"):
            generator.generate("a prompt", "small", "badge_1")

    def test_api_errors_propagate(self):
        client = Mock()
        client.images.generate.side_effect = Exception("API Error")
        generator = OpenAIImageGenerator(client=client)

        with pytest.raises(Exception, match="API Error"):
            generator.generate("a prompt", "large", "badge_1")
