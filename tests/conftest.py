import os
from typing import Any

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.db import Base, get_db
from app.models.inbox import Conversation, Message, MessageDirection, MessageStatus, MessageType, Platform

# Every module that reads vendor credentials or tokens from settings at call time
_SETTINGS_MODULES = (
    "app.services.inbox.meta_graph",
    "app.services.inbox.media_proxy",
    "app.services.inbox.transcode",
    "app.services.auth_flow",
    "app.websocket.broadcaster",
    "app.websocket.manager",
    "app.api.webhooks",
)

TEST_SETTINGS = {
    "redis_url": "",
    "meta_graph_base_url": "https://graph.facebook.com/v22.0",
    "meta_app_secret": "",
    "whatsapp_app_secret": "",
    "messenger_verify_token": "messenger-verify",
    "instagram_verify_token": "instagram-verify",
    "whatsapp_verify_token": "whatsapp-verify",
    "messenger_page_access_token": "page-token",
    "instagram_page_access_token": "ig-token",
    "whatsapp_access_token": "wa-token",
    "whatsapp_phone_number_id": "1098765432",
    "whatsapp_waba_id": "waba-1",
    "jwt_secret": "test-secret",
    "jwt_algorithm": "HS256",
}


class _JoseDateTimeProxy:
    def utcnow(self):
        from datetime import datetime, timezone

        return datetime.now(timezone.utc)

    def now(self, tz: Any | None = None):
        from datetime import datetime

        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        from datetime import datetime

        return getattr(datetime, name)


@pytest.fixture(autouse=True)
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)


@pytest.fixture(autouse=True)
def override_settings(monkeypatch):
    """Patch ``settings`` in every consuming module; call again to change values."""
    import importlib

    modules = [importlib.import_module(name) for name in _SETTINGS_MODULES]

    def _apply(**overrides):
        patched = settings.model_copy(update={**TEST_SETTINGS, **overrides})
        for module in modules:
            monkeypatch.setattr(module, "settings", patched)
        return patched

    _apply()
    return _apply


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over.
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def published(monkeypatch):
    """Capture realtime publishes as (topic, event) pairs."""
    from app.websocket import broadcaster

    calls: list[tuple[str, Any]] = []
    monkeypatch.setattr(broadcaster, "publish", lambda topic, event: calls.append((topic, event)))
    return calls


@pytest.fixture()
def graph(monkeypatch):
    """Route every Graph API call through an in-memory transport."""
    from app.services.inbox import meta_graph
    from tests.mocks import FakeGraphAPI

    fake = FakeGraphAPI()
    monkeypatch.setattr(meta_graph, "_build_client", fake.client)
    return fake


@pytest.fixture()
def client(db_session):
    from app.main import app

    app.dependency_overrides[get_db] = lambda: db_session
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def operator_headers():
    from app.services.auth_flow import issue_access_token

    return {"Authorization": f"Bearer {issue_access_token('operator-1')}"}


@pytest.fixture()
def whatsapp_conversation(db_session):
    conversation = Conversation(
        platform=Platform.whatsapp,
        external_user_id="77011234567",
        contact_name="Aigerim",
        contact_phone="+77011234567",
    )
    db_session.add(conversation)
    db_session.commit()
    db_session.refresh(conversation)
    return conversation


@pytest.fixture()
def messenger_conversation(db_session):
    conversation = Conversation(platform=Platform.messenger, external_user_id="psid-100")
    db_session.add(conversation)
    db_session.commit()
    db_session.refresh(conversation)
    return conversation


@pytest.fixture()
def outgoing_message(db_session):
    """Factory for stored operator sends."""

    def _create(conversation, vendor_message_id, created_at=None, status=MessageStatus.sent):
        message = Message(
            conversation_id=conversation.id,
            platform=conversation.platform,
            vendor_message_id=vendor_message_id,
            direction=MessageDirection.outgoing,
            message_type=MessageType.text,
            body="hello",
            status=status,
            is_read=True,
        )
        if created_at is not None:
            message.created_at = created_at
        db_session.add(message)
        db_session.commit()
        db_session.refresh(message)
        return message

    return _create
