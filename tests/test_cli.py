"""
Tests for the custody CLI
==========================
Commands run against the test app (in-memory DB, temporary ledger).
"""

import json

import pytest

from cli.custody import EXIT_COMPROMISED, EXIT_ERROR, EXIT_OK, build_parser, main
from services.hashing import digest
from services.transaction_recorder import TransactionRecorder


@pytest.fixture
def recorder(store, db_session, settings):
    return TransactionRecorder(store, db_session, settings)


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == EXIT_ERROR
        assert "usage" in capsys.readouterr().out.lower()

    def test_evidence_verify_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["evidence", "verify"])


class TestLedgerCommands:
    def test_status(self, app, recorder, capsys):
        recorder.record_evidence(digest(b"a"), "CASE-1", "officer.a")
        assert main(["ledger", "status"], app=app) == EXIT_OK
        assert "ndep-evidence-chain" in capsys.readouterr().out

    def test_verify_fail_closed(self, app, recorder, store, settings, capsys):
        recorder.record_custody_transfer("EV-1", "a", "b")
        recorder.record_custody_transfer("EV-1", "b", "c")
        chain = settings.custody_chain_id
        assert main(["ledger", "verify", "--chain", chain, "--fail-closed"], app=app) == EXIT_OK

        path = store.path_for(chain)
        path.write_text(path.read_text(encoding="utf-8").replace('"to_user":"c"', '"to_user":"z"'),
                        encoding="utf-8")
        assert main(["ledger", "verify", "--chain", chain, "--fail-closed"], app=app) == EXIT_COMPROMISED
        assert "Broken at: 1" in capsys.readouterr().out

    def test_seal_and_rebuild(self, app, store, settings, capsys):
        chain = settings.evidence_chain_id
        assert main(["ledger", "seal", "--chain", chain, "--reason", "shift end"], app=app) == EXIT_OK
        assert store.get_block(chain, 0).payload["reason"] == "shift end"
        assert main(["mirror", "rebuild"], app=app) == EXIT_OK
        assert "1 rows" in capsys.readouterr().out


class TestEvidenceAndAnomalies:
    def test_evidence_verify_digest(self, app, recorder, capsys):
        sha = digest(b"scene-photo")
        recorder.record_evidence(sha, "CASE-1", "officer.a", metadata={"evidence_id": "EV-1"})
        assert main(["evidence", "verify", "--digest", sha], app=app) == EXIT_OK
        out = json.loads(capsys.readouterr().out)
        assert out["exists"] is True
        assert out["evidence_id"] == "EV-1"

    def test_evidence_verify_unknown(self, app, capsys):
        assert main(["evidence", "verify", "--digest", digest(b"x")], app=app) == EXIT_ERROR

    def test_invalid_digest_is_reported(self, app, capsys):
        assert main(["evidence", "verify", "--digest", "nope"], app=app) == EXIT_ERROR
        assert "Invalid digest" in capsys.readouterr().err

    def test_detect_list_resolve(self, app, add_transfers, capsys):
        add_transfers("EV-1", [0, 10])
        assert main(["anomalies", "detect", "--evidence", "EV-1"], app=app) == EXIT_OK
        assert "rapid_transfer" in capsys.readouterr().out

        assert main(["anomalies", "list", "--evidence", "EV-1", "--unresolved"], app=app) == EXIT_OK
        listed = json.loads(capsys.readouterr().out)
        assert len(listed) == 1

        anomaly_id = str(listed[0]["id"])
        assert main(["anomalies", "resolve", "--id", anomaly_id, "--by", "sgt.b", "--note", "ok"],
                    app=app) == EXIT_OK
        assert main(["anomalies", "list", "--evidence", "EV-1", "--unresolved"], app=app) == EXIT_OK
        assert json.loads(capsys.readouterr().out.split("\n", 1)[1]) == []

    def test_algorithms_list(self, app, capsys):
        assert main(["algorithms", "list"], app=app) == EXIT_OK
        out = capsys.readouterr().out
        assert "chain_verification" in out
        assert "custody_anomaly" in out
