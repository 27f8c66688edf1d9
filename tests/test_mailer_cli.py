"""Unit tests for core/mailer.py and the main.py command line."""

import re
from datetime import datetime, timedelta, timezone

import pytest

import main
from conftest import FakeStorage, RecordingTransport, make_settings
from core.config import get_settings
from core.mailer import LogTransport, Mailer, ResendTransport, render_link_email

GOOD_LINK = "http://frontend.example.com/auth/verify?token=abc&x=1"


def test_magic_link_email_content():
    transport = RecordingTransport()
    Mailer(transport).send_magic_link("a@b.com", GOOD_LINK)
    (sent,) = transport.sent
    assert sent["to"] == "a@b.com"
    assert sent["subject"] == "Your Zorem sign-in link"
    assert GOOD_LINK in sent["text"]
    assert 'href="http://frontend.example.com/auth/verify?token=abc&amp;x=1"' in sent["html"]


def test_verification_email_content():
    transport = RecordingTransport()
    Mailer(transport).send_verification_email("a@b.com", GOOD_LINK)
    (sent,) = transport.sent
    assert sent["subject"] == "Verify your email for Zorem"
    assert "Verify email</a>" in sent["html"]
    assert GOOD_LINK in sent["text"]


def test_delivery_failure_is_swallowed(caplog):
    transport = RecordingTransport(fail=True)
    Mailer(transport).send_magic_link("a@b.com", GOOD_LINK)
    assert "Failed to deliver magic link email" in caplog.text


def test_render_escapes_markup():
    body = render_link_email("<b>Hi</b>", "intro", "Go", "https://x.example.com/?a=1&b=2")
    assert "<b>Hi</b>" not in body
    assert "&lt;b&gt;Hi&lt;/b&gt;" in body


def test_transport_selection():
    assert isinstance(Mailer.from_settings(make_settings())._transport, LogTransport)
    configured = make_settings(resend_api_key="re_123", resend_from_email="Zorem <hi@example.com>")
    assert isinstance(Mailer.from_settings(configured)._transport, ResendTransport)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SECRET_KEY", "cli-secret-key-0123456789abcdefghijkl")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'zorem.db'}")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_generate_secret(capsys):
    assert main.main(["generate-secret"]) == 0
    assert re.fullmatch(r"[0-9a-f]{64}\n", capsys.readouterr().out)


def test_no_command_prints_help(capsys):
    assert main.main([]) == 1
    assert "generate-secret" in capsys.readouterr().out


def test_reap_on_empty_database(cli_env, capsys):
    assert main.main(["reap"]) == 0
    out = capsys.readouterr().out
    assert "Released 0 room code(s), purged 0 expired token(s)." in out
    assert "media cleanup skipped" in out


def test_reap_reports_configuration_error(monkeypatch, capsys):
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.delenv("SECRET_KEY", raising=False)
    get_settings.cache_clear()
    try:
        assert main.main(["reap"]) == 2
    finally:
        get_settings.cache_clear()
    assert "Configuration error" in capsys.readouterr().err


def test_reap_deletes_media_of_expired_rooms(cli_env, monkeypatch, tmp_path, capsys):
    from core.database import create_db_engine
    from rooms.models import Room, Story
    from rooms.store import RoomStore

    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("S3_BUCKET_NAME", "zorem-media")
    fake = FakeStorage()
    monkeypatch.setattr("media.storage.build_object_storage", lambda settings: fake)

    engine = create_db_engine(f"sqlite:///{tmp_path / 'zorem.db'}")
    try:
        store = RoomStore(engine)
        past = datetime(2020, 1, 1, tzinfo=timezone.utc)
        room = Room(
            id="",
            code="ABC234",
            duration="1h",
            allow_uploads=True,
            created_at=past,
            expires_at=past + timedelta(hours=1),
            owner_id="u1",
        )
        store.claim_room(room, past)
        key = f"stories/{room.id}/1577836800000-0123456789abcdef.jpg"
        store.add_story(
            Story(room_id=room.id, media_key=key, media_type="image", content_type="image/jpeg", created_at=past)
        )
    finally:
        engine.dispose()

    assert main.main(["reap"]) == 0
    assert "Deleted 1 media object(s) of expired rooms." in capsys.readouterr().out
    assert fake.deleted == [key]
