from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import jwt
import pytest

from conftest import TEST_JWT_SECRET, token_for
from services.errors import InvalidError, NotFoundError, UnauthorizedError
from services.tokens import JwtTokenValidator, create_access_token


def test_validator_reads_subject_and_name_hints() -> None:
    token = create_access_token(TEST_JWT_SECRET, "auth0|42", username="Ryu", display_name="Ryu H.")

    claims = JwtTokenValidator(TEST_JWT_SECRET).validate(token)

    assert claims.external_id == "auth0|42"
    assert claims.username == "Ryu"
    assert claims.display_name == "Ryu H."


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not-a-jwt",
        create_access_token("some-other-secret", "auth0|42"),
        jwt.encode({"sub": "auth0|42", "exp": int(time.time()) - 3600}, TEST_JWT_SECRET, algorithm="HS256"),
        jwt.encode({"exp": int(time.time()) + 3600}, TEST_JWT_SECRET, algorithm="HS256"),
    ],
)
def test_validator_rejects_bad_tokens(token: str) -> None:
    with pytest.raises(UnauthorizedError):
        JwtTokenValidator(TEST_JWT_SECRET).validate(token)


def test_audience_is_checked_when_configured() -> None:
    token = jwt.encode(
        {"sub": "u", "aud": "platium", "exp": int(time.time()) + 60}, TEST_JWT_SECRET, algorithm="HS256"
    )
    assert JwtTokenValidator(TEST_JWT_SECRET, audience="platium").validate(token).external_id == "u"
    with pytest.raises(UnauthorizedError):
        JwtTokenValidator(TEST_JWT_SECRET, audience="someone-else").validate(token)


def test_resolve_is_idempotent_per_external_id(services) -> None:
    first = services.identity.resolve("auth0|1", username="Chun-Li")
    again = services.identity.resolve("auth0|1", username="ignored")

    assert first.id == again.id
    assert first.username == "chun_li"
    assert first.display_name == "Chun-Li"


def test_username_collision_gets_a_numeric_suffix(services) -> None:
    services.identity.resolve("auth0|1", username="ken")
    other = services.identity.resolve("auth0|2", username="ken")

    assert other.username.startswith("ken_")
    assert other.username[4:].isdigit()


def test_missing_hints_fall_back_to_a_generated_username(services) -> None:
    profile = services.identity.resolve("auth0|anon")

    assert profile.username.startswith("player_")
    assert len(profile.username) == len("player_") + 8
    with pytest.raises(InvalidError):
        services.identity.resolve("   ")


def test_concurrent_first_contact_yields_one_profile(services) -> None:
    with ThreadPoolExecutor(max_workers=6) as pool:
        profiles = list(pool.map(lambda _: services.identity.resolve("auth0|race", username="racer"), range(6)))

    assert len({p.id for p in profiles}) == 1


def test_authenticate_and_touch(services) -> None:
    profile = services.identity.authenticate(token_for("blanka"))
    assert profile.username == "blanka"
    assert profile.external_id == "ext-blanka"

    services.identity.touch(profile.id, online=True)
    assert services.identity.get(profile.id).is_online is True
    with pytest.raises(NotFoundError):
        services.identity.get("missing")
