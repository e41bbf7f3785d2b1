from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from verification.database import SessionLocal
from verification.errors import InvalidInput, TokenAlreadyCompleted, TokenExpired, TokenNotFound
from verification.models import utcnow
from verification.tokens import TokenGuard, mask_token


def late_guard(days=8):
    return TokenGuard(SessionLocal, clock=lambda: utcnow() + timedelta(days=days))


def test_issue(guard, status_of):
    issued = guard.issue("  Jane ", " Doe", " Jane@Example.COM ")
    assert len(issued.token) == 64
    assert issued.link == f"http://localhost:8000/kyc/verify?token={issued.token}"
    assert timedelta(days=6, hours=23) < issued.expires_at - utcnow() <= timedelta(days=7)
    assert status_of(issued.token) == "pending"

    identity = guard.validate(issued.token)
    assert (identity.first_name, identity.last_name, identity.email) == ("Jane", "Doe", "jane@example.com")


@pytest.mark.parametrize("first,last,email", [("", "Doe", "a@b.c"), ("Jane", "  ", "a@b.c"), ("Jane", "Doe", "")])
def test_issue_requires_all_fields(guard, first, last, email):
    with pytest.raises(InvalidInput, match="All fields are required"):
        guard.issue(first, last, email)


def test_tokens_are_unique(guard):
    tokens = {guard.issue("Jane", "Doe", "jane@example.com").token for _ in range(5)}
    assert len(tokens) == 5


def test_validate_activates_once(guard, issued, status_of):
    first = guard.validate(issued.token)
    second = guard.validate(issued.token)
    assert first.activated is True
    assert first.status == "in_progress"
    assert second.activated is False
    assert second.status == "in_progress"
    assert status_of(issued.token) == "in_progress"


def test_concurrent_validations_activate_once(guard, issued, status_of):
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: guard.validate(issued.token), range(8)))

    assert sum(1 for r in results if r.activated) == 1
    assert all(r.status == "in_progress" for r in results)
    assert status_of(issued.token) == "in_progress"


def test_validate_unknown_token(guard):
    with pytest.raises(TokenNotFound):
        guard.validate("f" * 64)


def test_validate_requires_token(guard):
    with pytest.raises(InvalidInput):
        guard.validate("")


def test_expired_token(guard, issued, status_of):
    with pytest.raises(TokenExpired):
        late_guard().validate(issued.token)
    assert status_of(issued.token) == "expired"

    # Stays expired even for a caller whose clock is back inside the window
    with pytest.raises(TokenExpired):
        guard.validate(issued.token)
    assert status_of(issued.token) == "expired"


def test_expired_in_progress_token(guard, issued, status_of):
    guard.validate(issued.token)
    with pytest.raises(TokenExpired):
        late_guard().require_active(issued.token)
    assert status_of(issued.token) == "expired"


def test_require_active_does_not_activate(guard, issued, status_of):
    identity = guard.require_active(issued.token)
    assert identity.status == "pending"
    assert identity.activated is False
    assert status_of(issued.token) == "pending"


def test_finalize(guard, issued, status_of):
    identity = guard.validate(issued.token)
    assert guard.finalize(identity.id) is True
    assert status_of(issued.token) == "completed"

    with pytest.raises(TokenAlreadyCompleted):
        guard.validate(issued.token)
    with pytest.raises(TokenAlreadyCompleted):
        guard.require_active(issued.token)

    # Already completed: nothing left to flip
    assert guard.finalize(identity.id) is False


def test_completed_token_past_expiry_reports_expired(guard, issued, status_of):
    guard.finalize(guard.validate(issued.token).id)
    with pytest.raises(TokenAlreadyCompleted):
        guard.validate(issued.token)
    with pytest.raises(TokenExpired):
        late_guard().validate(issued.token)
    assert status_of(issued.token) == "completed"


def test_finalize_does_not_revive_expired_token(guard, issued, status_of):
    with pytest.raises(TokenExpired):
        late_guard().validate(issued.token)
    assert guard.finalize(issued.kyc_request_id) is False
    assert status_of(issued.token) == "expired"


def test_mask_token():
    assert mask_token("abcdef0123456789") == "abcdef01..."
    assert mask_token("") == "<empty>"
