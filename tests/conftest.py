import os
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("META_APP_ID", "test-meta-app")
os.environ.setdefault("META_APP_SECRET", "test-meta-secret")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from app.db import Base

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from app.models.account import Account, Inbox
from app.models.channel import Channel
from app.models.contact import Contact, ContactInbox
from app.models.conversation import Conversation
from app.models.enums import ChannelKind, ConversationPriority, ConversationStatus
from app.services import channel_auth, idempotency, locks, oauth_state
from app.services.events import get_dispatcher
from tests.mocks import CONTACT_IGSID, FACEBOOK_PAGE_ID, INSTAGRAM_ACCOUNT_ID, FakeRedis


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        # pysqlite needs manual BEGIN for SAVEPOINT to work
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
    """Session whose commits only release savepoints of an outer transaction."""
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
def fake_redis(monkeypatch):
    """In-memory Redis wired into every module that looks the client up."""
    client = FakeRedis()
    for module in (channel_auth, idempotency, locks, oauth_state):
        monkeypatch.setattr(module, "get_redis_client", lambda: client)
    return client


@pytest.fixture(autouse=True)
def _reset_dispatcher():
    get_dispatcher().clear()
    yield
    get_dispatcher().clear()


@pytest.fixture()
def account(db_session):
    account = Account(name="Acme Support")
    db_session.add(account)
    db_session.commit()
    return account


def _make_inbox(db_session, account, channel: Channel, name: str) -> Inbox:
    db_session.add(channel)
    db_session.flush()
    inbox = Inbox(account_id=account.id, channel_id=channel.id, name=name)
    db_session.add(inbox)
    db_session.commit()
    db_session.refresh(inbox)
    return inbox


@pytest.fixture()
def instagram_channel(db_session):
    now = datetime.now(UTC)
    return Channel(
        kind=ChannelKind.instagram,
        external_account_id=INSTAGRAM_ACCOUNT_ID,
        name="acme_ig",
        access_token="ig-long-lived-token",
        expires_at=now + timedelta(days=50),
        token_issued_at=now - timedelta(hours=1),
    )


@pytest.fixture()
def instagram_inbox(db_session, account, instagram_channel):
    return _make_inbox(db_session, account, instagram_channel, "Instagram")


@pytest.fixture()
def facebook_inbox(db_session, account):
    now = datetime.now(UTC)
    channel = Channel(
        kind=ChannelKind.facebook,
        external_account_id=FACEBOOK_PAGE_ID,
        name="Acme Page",
        access_token="fb-page-token",
        expires_at=now + timedelta(days=50),
        token_issued_at=now - timedelta(hours=1),
    )
    return _make_inbox(db_session, account, channel, "Messenger")


@pytest.fixture()
def contact_inbox(db_session, instagram_inbox):
    contact = Contact(account_id=instagram_inbox.account_id, name="Jane Doe")
    db_session.add(contact)
    db_session.flush()
    contact_inbox = ContactInbox(
        contact_id=contact.id, inbox_id=instagram_inbox.id, source_id=CONTACT_IGSID
    )
    db_session.add(contact_inbox)
    db_session.commit()
    return contact_inbox


@pytest.fixture()
def conversation(db_session, instagram_inbox, contact_inbox):
    conversation = Conversation(
        account_id=instagram_inbox.account_id,
        inbox_id=instagram_inbox.id,
        contact_id=contact_inbox.contact_id,
        contact_inbox_id=contact_inbox.id,
        display_id=1,
        status=ConversationStatus.open,
        priority=ConversationPriority.low,
    )
    db_session.add(conversation)
    db_session.commit()
    return conversation
