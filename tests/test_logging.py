"""Redaction and correlation processors, checked against real audit events."""

from datetime import timedelta

import pytest

from gallerycore.config import TokenPolicy
from gallerycore.logging import (
    REDACTED,
    add_correlation_id,
    mask_email,
    redact_secrets,
    set_correlation_id,
)
from gallerycore.service import token_lifecycle
from gallerycore.service.errors import InvalidOrReusedTokenError
from gallerycore.service.token_lifecycle import TokenLifecycleManager
from gallerycore.service.tokens import TokenCodec
from gallerycore.storage.memory import MemoryStore


def test_secrets_replaced_by_exact_key():
    event = redact_secrets(
        None,
        "info",
        {
            "event": "x",
            "refresh_token": "a" * 128,
            "password": "hunter2-hunter2",
            "Authorization": "Bearer abc.def.ghi",
            "token_hash": "f" * 64,
            "code": "oauth-code",
        },
    )
    assert event["refresh_token"] == REDACTED
    assert event["password"] == REDACTED
    assert event["Authorization"] == REDACTED
    assert event["token_hash"] == REDACTED
    assert event["code"] == REDACTED


def test_identifiers_pass_through():
    fields = {
        "event": "refresh_token_rotated",
        "user_id": "user-123456",
        "token_id": "rt-abcdef123456",
        "old_token_id": "rt-old-000001",
        "new_token_id": "rt-new-000002",
        "token_class": "gallery",
    }
    assert redact_secrets(None, "info", dict(fields)) == fields


def test_emails_masked():
    event = redact_secrets(None, "info", {"email": "person@example.com", "to_email": "x"})
    assert event["email"] == "p***@example.com"
    assert event["to_email"] == REDACTED
    assert mask_email("@example.com") == REDACTED


def test_correlation_id_added():
    cid = set_correlation_id("req-42")
    assert cid == "req-42"
    assert add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"


def test_reuse_event_keeps_token_id(monkeypatch, clock):
    recorded = []
    monkeypatch.setattr(
        token_lifecycle,
        "log_security_event",
        lambda event, logger=None, **fields: recorded.append({"event": event, **fields}),
    )
    store = MemoryStore()
    user = store.create_user("owner@example.com", "owner")
    policy = TokenPolicy(secret="s" * 40, refresh_ttl=timedelta(days=7))
    lifecycle = TokenLifecycleManager(store, TokenCodec(policy, clock=clock), policy, clock=clock)

    first = lifecycle.issue_pair(user)
    lifecycle.rotate(first.refresh_token)
    with pytest.raises(InvalidOrReusedTokenError):
        lifecycle.rotate(first.refresh_token)

    replayed = store.get_refresh_token_by_hash(TokenCodec.hash_secret(first.refresh_token))
    reuse = next(e for e in recorded if e["event"] == "refresh_token_reuse_detected")
    rendered = redact_secrets(None, "warning", dict(reuse))
    assert rendered["token_id"] == replayed.id
    assert rendered["user_id"] == user.id
