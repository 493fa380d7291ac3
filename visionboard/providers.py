"""
External service clients: image generation, background removal, phrase
generation, payments and blob storage.

Each client turns transport failures into ExternalServiceError so callers
handle one error type.
"""

from __future__ import annotations

import mimetypes
import random
import re
import time
import uuid
from pathlib import Path
from typing import Optional, Protocol
import logging

import requests

from visionboard.errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 120
FAL_RUN_URL = "https://fal.run"

BACKGROUND_REMOVAL_MODEL = "fal-ai/birefnet"
AVATAR_MODEL = "fal-ai/qwen-image-edit"
SCENE_MODEL = "fal-ai/gpt-image-1.5/edit"

AVATAR_PROMPT = (
    "8-bit pixel-art portrait, chest-up view. Keep the person's likeness and "
    "features recognizable. Use a simple solid color background."
)
SCENE_PROMPT = (
    "8-bit pixel-art scene showing this person {goal}. Full scene with environment "
    "and context that represents achieving this goal. The person is happy and confident."
)

PHRASE_MODEL = "gpt-4o-mini"
PHRASE_SYSTEM_PROMPT = (
    "You are a motivational coach. Generate a short, powerful phrase (max 8 words) "
    "for a vision board goal. The phrase should be inspiring and personal, written "
    "in first person. No quotes, no punctuation at the end."
)
DEFAULT_PHRASE = "I will achieve this"

MOCK_IMAGES = [
    "https://picsum.photos/seed/goal1/1024/1024",
    "https://picsum.photos/seed/goal2/1024/1024",
    "https://picsum.photos/seed/goal3/1024/1024",
    "https://picsum.photos/seed/goal4/1024/1024",
    "https://picsum.photos/seed/goal5/1024/1024",
]


class ImageProvider(Protocol):
    """Image generation and background removal."""

    def remove_background(self, image_url: str) -> str:
        ...

    def pixelate(self, image_url: str) -> str:
        ...

    def generate_scene(self, user_image_url: str, goal_prompt: str) -> str:
        ...


class PhraseProvider(Protocol):
    def generate_phrase(self, goal: str) -> str:
        ...


class BlobStore(Protocol):
    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        ...


# =============================================================================
# fal.ai
# =============================================================================


class FalImageProvider:
    """
    fal.ai synchronous REST client.

    Requires FAL_KEY.
    """

    def __init__(
        self,
        api_key: Optional[str],
        session: Optional[requests.Session] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def _run(self, model: str, payload: dict) -> dict:
        if not self.api_key:
            raise ExternalServiceError("fal", "FAL_KEY is not configured")
        try:
            r = self.session.post(
                f"{FAL_RUN_URL}/{model}",
                json=payload,
                headers={"Authorization": f"Key {self.api_key}"},
                timeout=self.timeout_s,
            )
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            raise ExternalServiceError("fal", f"{model}: {e}") from e

    def remove_background(self, image_url: str) -> str:
        data = self._run(BACKGROUND_REMOVAL_MODEL, {"image_url": image_url})
        try:
            return data["image"]["url"]
        except (KeyError, TypeError) as e:
            raise ExternalServiceError("fal", f"unexpected response: {data!r}") from e

    def pixelate(self, image_url: str) -> str:
        data = self._run(AVATAR_MODEL, {"prompt": AVATAR_PROMPT, "image_url": image_url})
        return self._first_image(data)

    def generate_scene(self, user_image_url: str, goal_prompt: str) -> str:
        data = self._run(
            SCENE_MODEL,
            {
                "prompt": SCENE_PROMPT.format(goal=goal_prompt),
                "image_urls": [user_image_url],
            },
        )
        return self._first_image(data)

    def _first_image(self, data: dict) -> str:
        try:
            return data["images"][0]["url"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("fal", f"unexpected response: {data!r}") from e


class MockImageProvider:
    """Stand-in used with DEV_MOCK_FAL=true; returns placeholder images."""

    def __init__(self, latency_s: float = 2.0):
        self.latency_s = latency_s

    def _delay(self) -> None:
        if self.latency_s:
            time.sleep(self.latency_s)

    def remove_background(self, image_url: str) -> str:
        logger.info("[DEV_MOCK_FAL] Mocking remove_background")
        self._delay()
        return image_url

    def pixelate(self, image_url: str) -> str:
        logger.info("[DEV_MOCK_FAL] Mocking pixelate")
        self._delay()
        return random.choice(MOCK_IMAGES)

    def generate_scene(self, user_image_url: str, goal_prompt: str) -> str:
        logger.info("[DEV_MOCK_FAL] Mocking generate_scene for: %r", goal_prompt)
        self._delay()
        seed = re.sub(r"\s+", "-", goal_prompt).lower()[:20]
        return f"https://picsum.photos/seed/{seed}/1024/1024"


# =============================================================================
# OpenAI
# =============================================================================


class OpenAIPhraseProvider:
    """
    Motivational phrase generation.

    Requires OPENAI_API_KEY.
    """

    def __init__(self, api_key: Optional[str] = None, model: str = PHRASE_MODEL):
        self.api_key = api_key
        self.model = model
        self._client = None

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def generate_phrase(self, goal: str) -> str:
        from openai import OpenAIError

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": PHRASE_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Generate a motivational phrase for this goal: {goal}"},
                ],
                max_tokens=30,
                temperature=0.8,
            )
        except OpenAIError as e:
            raise ExternalServiceError("openai", str(e)) from e

        text = response.choices[0].message.content
        return (text or "").strip() or DEFAULT_PHRASE


# =============================================================================
# Polar
# =============================================================================


class PolarClient:
    """Minimal Polar API client for checkouts."""

    def __init__(
        self,
        access_token: Optional[str],
        base_url: str = "https://api.polar.sh/v1",
        session: Optional[requests.Session] = None,
        timeout_s: float = 30,
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def _request(self, method: str, path: str, **kwargs) -> dict:
        if not self.access_token:
            raise ExternalServiceError("polar", "POLAR_ACCESS_TOKEN is not configured")
        try:
            r = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout_s,
                **kwargs,
            )
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            raise ExternalServiceError("polar", f"{method} {path}: {e}") from e

    def get_checkout(self, checkout_id: str) -> dict:
        return self._request("GET", f"/checkouts/{checkout_id}")

    def create_checkout(
        self,
        product_id: str,
        success_url: str,
        external_customer_id: Optional[str] = None,
    ) -> str:
        """Create a hosted checkout session and return its URL."""
        body = {"products": [product_id], "success_url": success_url}
        if external_customer_id:
            body["external_customer_id"] = external_customer_id
        data = self._request("POST", "/checkouts/", json=body)
        return data["url"]


# =============================================================================
# Blob storage
# =============================================================================


class LocalBlobStore:
    """Stores blobs under a directory served as static files."""

    def __init__(self, root_dir: str, public_url: str):
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_url = public_url.rstrip("/")

    def put(self, name: str, data: bytes, content_type: Optional[str] = None) -> str:
        safe = "/".join(
            re.sub(r"[^A-Za-z0-9._-]", "_", part)
            for part in name.split("/")
            if part not in ("", ".", "..")
        )
        if not safe:
            safe = uuid.uuid4().hex
        path = self.root / safe
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f"{self.public_url}/{safe}"


def download(url: str, session: Optional[requests.Session] = None, timeout_s: float = 60) -> tuple[bytes, str]:
    """Fetch a remote asset; returns (bytes, content type)."""
    http = session or requests
    try:
        r = http.get(url, timeout=timeout_s)
        r.raise_for_status()
    except requests.RequestException as e:
        raise ExternalServiceError("download", f"{url}: {e}") from e
    content_type = r.headers.get("Content-Type") or mimetypes.guess_type(url)[0] or "image/png"
    return r.content, content_type


def persist_remote(blob_store: BlobStore, url: str, name: str, session: Optional[requests.Session] = None) -> str:
    """Copy a provider-hosted image into our blob store and return its URL."""
    data, content_type = download(url, session=session)
    return blob_store.put(name, data, content_type)
