"""Shared fixtures: a temp database, fake providers and the wired services."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from visionboard.auth import SessionVerifier
from visionboard.config import Settings, get_limits, DEFAULT_RATE_LIMITS
from visionboard.identity import Identity
from visionboard.metrics import MetricsCollector
from visionboard.services import build_services


class FakeResponse:
    def __init__(self, content=b"png-bytes", content_type="image/png"):
        self.content = content
        self.headers = {"Content-Type": content_type}

    def raise_for_status(self):
        pass


class FakeSession:
    """Stands in for requests.Session when copying provider images."""

    def __init__(self):
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        return FakeResponse()


class FakeImages:
    def __init__(self, fail=False):
        self.fail = fail
        self.scene_calls = []

    def remove_background(self, image_url):
        return f"https://fal.example/no-bg/{image_url.rsplit('/', 1)[-1]}"

    def pixelate(self, image_url):
        return "https://fal.example/pixel.png"

    def generate_scene(self, user_image_url, goal_prompt):
        self.scene_calls.append((user_image_url, goal_prompt))
        if self.fail:
            raise RuntimeError("model unavailable")
        return f"https://fal.example/scene/{len(self.scene_calls)}.png"


class FakePhrases:
    def __init__(self, phrase="I cross the finish line", fail=False):
        self.phrase = phrase
        self.fail = fail

    def generate_phrase(self, goal):
        if self.fail:
            raise RuntimeError("openai down")
        return self.phrase


class FakeBlobStore:
    def __init__(self):
        self.blobs = {}

    def put(self, name, data, content_type=None):
        self.blobs[name] = (data, content_type)
        return f"https://blobs.example/{name}"


class FakePolar:
    def __init__(self, checkout=None):
        self.checkout = checkout or {}
        self.created = []

    def get_checkout(self, checkout_id):
        return dict(self.checkout, id=checkout_id)

    def create_checkout(self, product_id, success_url, external_customer_id=None):
        self.created.append((product_id, success_url, external_customer_id))
        return "https://polar.example/checkout/abc"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "visionboard.db"),
        blob_dir=str(tmp_path / "blobs"),
        polar_webhook_secret="test-webhook-secret",
        polar_product_id="prod_123",
        limits=get_limits(),
        rate_limits=DEFAULT_RATE_LIMITS,
    )


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def phrases():
    return FakePhrases()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def polar():
    return FakePolar()


@pytest.fixture
def services(settings, images, phrases, blob_store, polar, sessions):
    services = build_services(
        settings,
        images=images,
        phrases=phrases,
        blob_store=blob_store,
        polar=polar,
        metrics=MetricsCollector(enable_logging=False),
        sessions=sessions,
    )
    services.goals.http_session = FakeSession()
    yield services
    services.close()


@pytest.fixture
def storage(services):
    return services.storage


@pytest.fixture
def visitor():
    return Identity(visitor_id="fp_visitor_1")


@pytest.fixture
def user():
    return Identity(user_id="user_1")


@pytest.fixture
def board(services, visitor):
    """A board owned by the visitor, created from an uploaded photo."""
    return services.boards.create_board(
        visitor,
        photo_url="https://blobs.example/me.jpg",
        photo_no_bg_url="https://blobs.example/me-no-bg.png",
    )


SESSION_ISSUER = "https://clerk.visionboard.test"
SESSION_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
OTHER_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeJWKSClient:
    """Serves the test signing key instead of fetching a JWKS document."""

    def __init__(self, public_key):
        self.public_key = public_key

    def get_signing_key_from_jwt(self, token):
        return SimpleNamespace(key=self.public_key)


def sign_session(sub, key=SESSION_KEY, expires_in=600, **claims):
    """Sign a session JWT the way the identity provider does."""
    now = int(time.time())
    payload = {"sub": sub, "iss": SESSION_ISSUER, "iat": now, "exp": now + expires_in}
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="RS256")


@pytest.fixture
def jwks_client():
    return FakeJWKSClient(SESSION_KEY.public_key())


@pytest.fixture
def sessions(jwks_client):
    return SessionVerifier(jwks_client=jwks_client, issuer=SESSION_ISSUER)


@pytest.fixture
def session_token():
    """Factory for signed session tokens: session_token("user_1", expires_in=-60)."""
    return sign_session


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {sign_session('user_1')}"}


@pytest.fixture
def foreign_key():
    """A signing key the verifier does not trust."""
    return OTHER_KEY
