"""
Pytest fixtures: in-memory post store, controller and mocked Telegram objects
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import postbot

OWNER_ID = 1001
OTHER_OWNER_ID = 2002
STRANGER_ID = 3003


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    post_store = postbot.PostStore(engine)
    post_store.init_schema()
    yield post_store
    post_store.dispose()


@pytest.fixture
def controller(store):
    return postbot.DraftController(store, frozenset({OWNER_ID, OTHER_OWNER_ID}))


@pytest.fixture
def config():
    return postbot.BotConfig(bot_token="test-token", allowlist=frozenset({OWNER_ID, OTHER_OWNER_ID}))


@pytest.fixture
def context(controller, config):
    ctx = MagicMock()
    ctx.bot_data = {"controller": controller, "config": config}
    ctx.args = []
    ctx.bot.username = "post_bot"
    return ctx


@pytest.fixture
def make_update():
    """Build a mocked Update carrying a message from ``user_id``."""

    def _make(user_id=OWNER_ID, text=None, photo_file_id=None, caption=None):
        message = MagicMock()
        message.text = text
        message.caption = caption
        message.photo = [MagicMock(file_id="small"), MagicMock(file_id=photo_file_id)] if photo_file_id else []
        message.reply_text = AsyncMock()
        message.reply_photo = AsyncMock()

        update = MagicMock()
        update.effective_user.id = user_id
        update.effective_message = message
        update.message = message
        update.callback_query = None
        return update

    return _make


@pytest.fixture
def publish_post(controller):
    """Create and publish a post for ``owner_id`` through the controller."""

    def _publish(owner_id=OWNER_ID, caption="Hello", formula="[Help](alert:Tip)"):
        controller.new_draft(owner_id)
        controller.ingest_text(owner_id, caption)
        if formula:
            controller.ingest_text(owner_id, formula)
        return controller.save(owner_id)

    return _publish
