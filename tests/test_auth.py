import pytest

from auth import bearer_token, issue_token, read_token
from errors import UnauthenticatedError


def test_token_roundtrip_carries_identity() -> None:
    token = issue_token("sub-1", "owner@example.com", "Owner")
    claims = read_token(token)
    assert claims["sub"] == "sub-1"
    assert claims["email"] == "owner@example.com"
    assert claims["name"] == "Owner"


def test_tampered_or_missing_token_is_rejected() -> None:
    token = issue_token("sub-1", "owner@example.com")
    with pytest.raises(UnauthenticatedError):
        read_token(token[:-2] + "xx")
    with pytest.raises(UnauthenticatedError):
        read_token(None)


def test_bearer_token_parsing() -> None:
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None
    assert bearer_token("Bearer ") is None
