"""
Tests for API authentication dependencies.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch
from uuid import uuid4

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from purchase_access.api.dependencies import (
    decode_caller_token,
    get_authenticated_caller,
    get_optional_caller,
    require_internal_api_key,
)
from tests.conftest import INTERNAL_API_KEY, make_token


class TestDecodeCallerToken:
    """Tests for decode_caller_token."""

    def test_valid_token(self):
        user_id = uuid4()
        caller = decode_caller_token(make_token(str(user_id), "User@Example.com"))

        assert caller.id == user_id
        assert caller.email == "User@Example.com"

    def test_expired_token(self):
        token = make_token(exp=datetime.now(UTC) - timedelta(minutes=1))

        with pytest.raises(HTTPException) as exc_info:
            decode_caller_token(token)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token expired"

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": str(uuid4()), "email": "user@example.com"},
            "another-secret-key-that-is-long-enough!",
            algorithm="HS256",
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_caller_token(token)

        assert exc_info.value.status_code == 401

    def test_non_uuid_subject(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_caller_token(make_token("user-42"))

        assert exc_info.value.status_code == 401

    def test_missing_email(self):
        with pytest.raises(HTTPException):
            decode_caller_token(make_token(email=None))


class TestCallerDependencies:
    async def test_anonymous_caller(self):
        assert await get_optional_caller(None) is None

    async def test_bearer_caller(self):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=make_token())
        caller = await get_optional_caller(credentials)

        assert caller is not None

    async def test_required_caller_missing(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_authenticated_caller(None)

        assert exc_info.value.status_code == 401


class TestInternalApiKey:
    """Tests for require_internal_api_key."""

    async def test_valid_key(self):
        await require_internal_api_key(INTERNAL_API_KEY)

    @pytest.mark.parametrize("key", [None, "", "wrong-key"])
    async def test_invalid_key(self, key):
        with pytest.raises(HTTPException) as exc_info:
            await require_internal_api_key(key)

        assert exc_info.value.status_code == 401

    async def test_unconfigured_key(self):
        with patch("purchase_access.api.dependencies.settings") as mock_settings:
            mock_settings.internal_api_key = ""

            with pytest.raises(HTTPException) as exc_info:
                await require_internal_api_key("anything")

        assert exc_info.value.status_code == 503
