"""
Tests for request fingerprinting.
"""
import hashlib

import pytest

from credit_meter.core.fingerprint import (
    FINGERPRINT_LENGTH,
    asset_fingerprint,
    distillation_fingerprint,
    fingerprint,
)


class TestFingerprint:
    """Determinism and separation of fingerprints."""

    def test_same_input_same_fingerprint(self):
        payload = {"prompt": "gold star badge", "size": "medium"}
        assert fingerprint("image", payload) == fingerprint("image", dict(payload))

    def test_key_order_does_not_matter(self):
        first = fingerprint("image", {"prompt": "orb", "size": "small"})
        second = fingerprint("image", {"size": "small", "prompt": "orb"})
        assert first == second

    def test_relevant_field_changes_fingerprint(self):
        base = fingerprint("image", {"prompt": "orb", "size": "small"})
        assert fingerprint("image", {"prompt": "orb", "size": "large"}) != base
        assert fingerprint("image", {"prompt": "orbs", "size": "small"}) != base

    def test_operation_kind_is_part_of_the_key(self):
        payload = {"text": "same"}
        assert fingerprint("image", payload) != fingerprint("distillation", payload)

    def test_distinct_samples_do_not_collide(self):
        samples = [f"note number {i}" for i in range(200)]
        keys = {fingerprint("distillation", {"raw_text": text}) for text in samples}
        assert len(keys) == len(samples)

    def test_fixed_length_hex(self):
        key = fingerprint("image", ["a", "b"])
        assert len(key) == FINGERPRINT_LENGTH == 32
        int(key, 16)

    def test_sequence_payload_keeps_order(self):
        assert fingerprint("image", ["a", "b"]) != fingerprint("image", ["b", "a"])

    def test_empty_operation_kind_rejected(self):
        with pytest.raises(ValueError, match="operation_kind is required"):
            fingerprint("", {"a": 1})


class TestServiceFingerprints:
    """Key derivations used by the asset and event services."""

    def test_asset_fingerprint_matches_prompt_and_size(self):
        expected = hashlib.sha256("a glowing orb|large".encode("utf-8")).hexdigest()[:32]
        assert asset_fingerprint("a glowing orb", "large") == expected

    def test_asset_fingerprint_size_sensitive(self):
        assert asset_fingerprint("orb", "small") != asset_fingerprint("orb", "medium")

    def test_distillation_fingerprint_puts_kind_first(self):
        expected = hashlib.sha256("note_text|hello".encode("utf-8")).hexdigest()[:32]
        assert distillation_fingerprint("hello", "note_text") == expected

    def test_distillation_fingerprint_kind_sensitive(self):
        assert distillation_fingerprint("hi", "note_text") != distillation_fingerprint(
            "hi", "voice_transcript"
        )
