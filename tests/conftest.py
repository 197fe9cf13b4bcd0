"""
Shared fixtures: a Flask app per test with an in-memory database and a
temporary ledger directory.
"""

from datetime import datetime, timedelta, timezone

import pytest

BASE_TIME = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def app(tmp_path):
    from app_config import create_app
    from models import db

    application = create_app(overrides={
        "app_env": "testing",
        "database_url": "sqlite://",
        "ledger_dir": str(tmp_path / "ledger"),
    })
    application.config["TESTING"] = True
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db_session(app):
    from models import db

    yield db.session


@pytest.fixture()
def settings(app):
    return app.config["CUSTODY_SETTINGS"]


@pytest.fixture()
def store(app):
    return app.extensions["ledger_store"]


@pytest.fixture()
def add_transfers(db_session):
    """
    Insert custody_transfers rows directly, as the surrounding application would.

    ``offsets`` are seconds after BASE_TIME; ``to_users`` defaults to a
    distinct holder per transfer.
    """
    from models.evidence import CustodyTransfer

    def _add(evidence_id, offsets, to_users=None, locations=None):
        to_users = to_users or [f"holder-{i}" for i in range(len(offsets))]
        locations = locations or [(None, None)] * len(offsets)
        previous = "intake.officer"
        rows = []
        for offset, to_user, (from_loc, to_loc) in zip(offsets, to_users, locations):
            rows.append(CustodyTransfer(
                evidence_id=evidence_id,
                from_user=previous,
                to_user=to_user,
                from_location=from_loc,
                to_location=to_loc,
                transfer_type="handover",
                transferred_at=BASE_TIME + timedelta(seconds=offset),
            ))
            previous = to_user
        db_session.add_all(rows)
        db_session.commit()
        return rows

    return _add
