import io
from types import SimpleNamespace

import pytest
from PIL import Image

import storytoon
from storytoon import GeneratedImage, GenerationError, StoryboardSession


def make_png(size=(100, 200), color=(255, 0, 0, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


def make_jpeg(size=(64, 64), color=(0, 128, 0)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


class FakeModels:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


class FakeGenai:
    """Mimics genai.Client: only client.models.generate_content is used."""

    def __init__(self, *responses):
        self.models = FakeModels(responses)


def text_response(parsed=None, text=""):
    return SimpleNamespace(parsed=parsed, text=text)


def image_response(data, mime_type="image/png"):
    parts = [
        SimpleNamespace(text="Here is your panel.", inline_data=None),
        SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type)),
    ]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


class FakeStoryClient:
    """Stands in for StoryAIClient; fails on any scene listed in fail_on."""

    def __init__(self, scenes=None, fail_on=(), split_error=None):
        self.scenes = list(scenes or ["one", "two", "three", "four"])
        self.fail_on = set(fail_on)
        self.split_error = split_error
        self.split_calls = []
        self.image_calls = []

    def split_story(self, story):
        self.split_calls.append(story)
        if self.split_error is not None:
            raise self.split_error
        return list(self.scenes)

    def generate_panel_image(self, composite, scene_description):
        self.image_calls.append(scene_description)
        if scene_description in self.fail_on:
            raise GenerationError(storytoon.NO_IMAGE_MESSAGE)
        return GeneratedImage(data=make_png((16, 9), (0, 0, 255, 255)), mime_type="image/png")


@pytest.fixture
def fake_client():
    return FakeStoryClient()


@pytest.fixture
def events():
    return []


@pytest.fixture
def session(fake_client, events):
    return StoryboardSession(client=fake_client, on_event=events.append)


@pytest.fixture
def no_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)
