"""
Unit Tests: Algorithm Base Classes
=====================================
Canonical JSON, hashing, AlgorithmParams, AlgorithmResult and the run()
envelope shared by chain verification and custody anomaly detection.
"""

import json

from algorithms.base import (
    AlgorithmBase,
    AlgorithmParams,
    AlgorithmResult,
    canonical_json,
    hash_json,
)


class TestCanonicalJson:
    def test_sorted_keys_no_whitespace(self):
        assert canonical_json({"z": 1, "a": 2, "m": 3}) == '{"a":2,"m":3,"z":1}'

    def test_nested_round_trip(self):
        obj = {"payload": {"to_user": "lab.tech", "metadata": {"file_size": 10}}}
        assert json.loads(canonical_json(obj)) == obj

    def test_non_native_values_are_stringified(self):
        from datetime import datetime, timezone

        ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert json.loads(canonical_json({"at": ts}))["at"] == str(ts)


class TestHashJson:
    def test_deterministic(self):
        obj = {"evidence_id": "EV-1", "transfers": [1, 2, 3]}
        assert hash_json(obj) == hash_json(obj)
        assert len(hash_json(obj)) == 64

    def test_key_order_irrelevant(self):
        assert hash_json({"z": 1, "a": 2}) == hash_json({"a": 2, "z": 1})

    def test_different_objects_differ(self):
        assert hash_json({"a": 1}) != hash_json({"a": 2})


class TestAlgorithmParams:
    def test_serialization(self):
        params = AlgorithmParams(subject_id="EV-9", actor_name="cli", extra={"max_gap_hours": 12})
        d = params.to_dict()
        assert d["subject_id"] == "EV-9"
        assert d["actor_name"] == "cli"
        assert d["extra"] == {"max_gap_hours": 12}

    def test_canonical_deterministic(self):
        assert AlgorithmParams("EV-1").canonical() == AlgorithmParams("EV-1").canonical()
        assert AlgorithmParams("EV-1").canonical() != AlgorithmParams("EV-2").canonical()


class TestAlgorithmResult:
    def _result(self):
        return AlgorithmResult(
            algorithm_id="chain_verification",
            algorithm_version="1.0.0",
            run_id="same-id",
            payload={"intact": True},
            started_at="2025-01-01T00:00:00",
            completed_at="2025-01-01T00:00:01",
        )

    def test_finalize_sets_integrity(self):
        result = self._result().finalize()
        assert len(result.integrity_check) == 64

    def test_integrity_consistent(self):
        assert self._result().finalize().integrity_check == self._result().finalize().integrity_check

    def test_integrity_covers_payload(self):
        other = self._result()
        other.payload = {"intact": False}
        assert other.finalize().integrity_check != self._result().finalize().integrity_check


class DoublingAlgorithm(AlgorithmBase):
    """Minimal concrete algorithm for testing."""

    @property
    def algorithm_id(self):
        return "doubling"

    @property
    def algorithm_version(self):
        return "0.1.0"

    def _execute(self, params, context):
        return {"computed": context["value"] * 2, "warnings": ["approximate"]}


class FailingAlgorithm(AlgorithmBase):
    @property
    def algorithm_id(self):
        return "failing"

    @property
    def algorithm_version(self):
        return "0.1.0"

    def _execute(self, params, context):
        raise ValueError("Intentional test failure")


class TestAlgorithmBase:
    def test_run_produces_result(self):
        result = DoublingAlgorithm().run(AlgorithmParams("EV-1"), {"value": 5})
        assert result.success is True
        assert result.payload["computed"] == 10
        assert result.warnings == ["approximate"]
        assert result.result_hash == hash_json(result.payload)
        assert result.integrity_check != ""
        assert result.started_at and result.completed_at

    def test_run_captures_failure(self):
        result = FailingAlgorithm().run(AlgorithmParams("EV-1"), {})
        assert result.success is False
        assert "Intentional test failure" in result.error
        assert result.integrity_check != ""

    def test_params_hash_tracks_params(self):
        algo = DoublingAlgorithm()
        r1 = algo.run(AlgorithmParams("EV-1"), {"value": 1})
        r2 = algo.run(AlgorithmParams("EV-1"), {"value": 1})
        r3 = algo.run(AlgorithmParams("EV-2"), {"value": 1})
        assert r1.params_hash == r2.params_hash
        assert r1.params_hash != r3.params_hash

    def test_description_is_docstring(self):
        assert DoublingAlgorithm().description == "Minimal concrete algorithm for testing."
