import io

import pytest
from PIL import Image

import storytoon
from storytoon import (CharacterRef, CompositeError, GeneratedImage, GenerationError, SessionBusyError,
                       StoryboardSession, composite_characters)
from conftest import FakeStoryClient, make_jpeg, make_png

ROBOT_STORY = "A robot chef bakes a cake that floats away"
ROBOT_SCENES = [
    "A robot chef ties on an apron in a shiny kitchen.",
    "The robot whisks batter with three mechanical arms.",
    "A perfect cake comes out of the oven, glowing.",
    "The cake lifts off the counter and floats out the window.",
]


def ref(name="hero.png", color=(255, 0, 0, 255)):
    return CharacterRef(data=make_png(color=color), filename=name)


class CompositorSpy:
    def __init__(self, session=None, fail_on_call=None):
        self.calls = []
        self.session = session
        self.fail_on_call = fail_on_call
        self.seen_states = []

    def __call__(self, characters, aspect_ratio):
        self.calls.append((list(characters), aspect_ratio))
        if self.session is not None:
            index = len(self.calls) - 1
            p = self.session.panels[index]
            self.seen_states.append((p.is_generating, p.image))
        if self.fail_on_call == len(self.calls):
            raise CompositeError("Could not load character image broken.png")
        return composite_characters(characters, aspect_ratio)


def test_session_starts_with_four_empty_panels(session):
    assert len(session.panels) == 4
    for p in session.panels:
        assert p.story == "" and p.image is None and p.characters == [] and not p.is_generating
    assert session.error is None
    assert not session.loading
    assert session.aspect_ratio == "16:9"


def test_third_character_is_ignored(session):
    assert session.add_characters(0, [ref("a.png")]) == 1
    assert session.add_characters(0, [ref("b.png")]) == 1
    assert session.add_characters(0, [ref("c.png")]) == 0

    assert [c.filename for c in session.panels[0].characters] == ["a.png", "b.png"]


def test_adding_three_at_once_keeps_first_two(session):
    kept = session.add_characters(2, [ref("a.png"), ref("b.png"), ref("c.png")])
    assert kept == 2
    assert [c.filename for c in session.panels[2].characters] == ["a.png", "b.png"]
    assert session.panels[1].characters == []


@pytest.mark.parametrize("removed,left", [(0, "b.png"), (1, "a.png")])
def test_remove_character_keeps_the_other(session, removed, left):
    session.add_characters(1, [ref("a.png"), ref("b.png")])
    session.remove_character(1, removed)
    assert [c.filename for c in session.panels[1].characters] == [left]


def test_remove_character_out_of_range(session):
    session.add_characters(0, [ref()])
    with pytest.raises(IndexError):
        session.remove_character(0, 1)


def test_panel_index_out_of_range(session):
    with pytest.raises(IndexError):
        session.set_panel_story(4, "nope")


@pytest.mark.parametrize("story", ["", "   \n"])
def test_regenerate_requires_narrative(fake_client, story):
    spy = CompositorSpy()
    session = StoryboardSession(client=fake_client, compositor=spy)
    session.set_panel_story(1, story)

    with pytest.raises(ValueError):
        session.regenerate_panel(1)

    assert session.error == "Please provide a story for Panel 2 before regenerating."
    assert spy.calls == []
    assert fake_client.image_calls == []


def test_generate_requires_story(session, fake_client):
    with pytest.raises(ValueError):
        session.generate_story("   ")
    assert session.error == "Please provide a story."
    assert fake_client.split_calls == []
    assert not session.generation_attempted


def test_failure_on_panel_two_halts_the_run(events):
    client = FakeStoryClient(fail_on={"two"})
    session = StoryboardSession(client=client, on_event=events.append)

    assert session.generate_story("story") is False

    assert client.image_calls == ["one", "two"]
    assert session.panels[0].image is not None
    for p in session.panels[1:]:
        assert p.image is None
        assert not p.is_generating
    assert session.error == f"Panel 2 Error: {storytoon.NO_IMAGE_MESSAGE}"
    assert not session.loading
    types = [e["type"] for e in events]
    assert "panel_error" in types
    assert types[-1] == "done"
    assert {"type": "panel_started", "panel": 3} not in events


def test_split_failure_is_surfaced(events):
    client = FakeStoryClient(split_error=GenerationError(storytoon.SPLIT_FAILED_MESSAGE))
    session = StoryboardSession(client=client, on_event=events.append)
    session.set_panel_story(0, "kept")

    assert session.generate_story("story") is False

    assert session.error == storytoon.SPLIT_FAILED_MESSAGE
    assert client.image_calls == []
    assert session.panels[0].story == "kept"
    assert not session.loading
    assert {"type": "error", "message": storytoon.SPLIT_FAILED_MESSAGE} in events


def test_composite_failure_stops_before_generation(fake_client):
    spy = CompositorSpy(fail_on_call=1)
    session = StoryboardSession(client=fake_client, compositor=spy)

    assert session.generate_story("story") is False
    assert fake_client.image_calls == []
    assert len(spy.calls) == 1
    assert session.error.startswith("Panel 1 Error: Could not load character image")


def test_robot_chef_end_to_end(events):
    client = FakeStoryClient(scenes=ROBOT_SCENES)
    session = StoryboardSession(client=client, on_event=events.append)
    session.add_characters(0, [ref("robot.png")])
    assert not any(session.can_regenerate(i) for i in range(4))

    assert session.generate_story(ROBOT_STORY) is True

    assert client.split_calls == [ROBOT_STORY]
    assert [p.story for p in session.panels] == ROBOT_SCENES
    assert client.image_calls == ROBOT_SCENES
    assert all(p.image is not None for p in session.panels)
    assert all(session.can_regenerate(i) for i in range(4))
    assert session.error is None
    assert session.generation_attempted
    assert [e["type"] for e in events] == (
        ["split_complete"] + ["panel_started", "panel_done"] * 4 + ["done"])
    assert [e["panel"] for e in events if e["type"] == "panel_done"] == [1, 2, 3, 4]


def test_generation_clears_previous_image_first(fake_client):
    session = StoryboardSession(client=fake_client)
    spy = CompositorSpy(session=session)
    session.compositor = spy
    old = GeneratedImage(data=make_png((4, 4)))
    session.panels[0].image = old
    session.set_panel_story(0, "one")

    assert session.regenerate_panel(0) is True

    assert spy.seen_states == [(True, None)]
    assert session.panels[0].image is not None
    assert session.panels[0].image != old
    assert not session.panels[0].is_generating


def test_regenerate_uses_panel_characters_and_aspect_ratio(fake_client):
    spy = CompositorSpy()
    session = StoryboardSession(client=fake_client, compositor=spy)
    session.add_characters(3, [ref("a.png"), ref("b.png")])
    session.set_panel_story(3, "four")
    session.set_aspect_ratio("9:16")

    session.regenerate_panel(3)

    characters, aspect_ratio = spy.calls[0]
    assert [c.filename for c in characters] == ["a.png", "b.png"]
    assert aspect_ratio == "9:16"
    assert fake_client.image_calls == ["four"]


def test_regenerate_failure_keeps_image_unset(session, fake_client):
    fake_client.fail_on = {"two"}
    session.set_panel_story(1, "two")

    assert session.regenerate_panel(1) is False
    assert session.panels[1].image is None
    assert session.error == f"Panel 2 Error: {storytoon.NO_IMAGE_MESSAGE}"


def test_regenerate_clears_old_error(session):
    session.error = "Panel 1 Error: boom"
    session.set_panel_story(0, "one")
    assert session.regenerate_panel(0) is True
    assert session.error is None


def test_busy_session_rejects_regenerate(session):
    session.set_panel_story(0, "one")
    session.loading = True
    assert not session.can_regenerate(0)
    with pytest.raises(SessionBusyError):
        session.regenerate_panel(0)


def test_invalid_aspect_ratio(session):
    with pytest.raises(ValueError):
        session.set_aspect_ratio("1:1")
    assert session.aspect_ratio == "16:9"


def test_download_panel(tmp_path, session):
    session.generate_story("story")
    path = session.download_panel(1, tmp_path)

    assert path == tmp_path / "storytoon-panel-2.png"
    assert Image.open(path).format == "PNG"


def test_download_converts_other_formats_to_png(tmp_path, session):
    session.panels[0].image = GeneratedImage(data=make_jpeg(), mime_type="image/jpeg")
    path = session.download_panel(0, tmp_path)
    assert Image.open(io.BytesIO(path.read_bytes())).format == "PNG"


def test_download_without_image(tmp_path, session):
    with pytest.raises(ValueError):
        session.download_panel(0, tmp_path)


def test_snapshot(session):
    session.add_characters(0, [ref()])
    session.generate_story("story")
    snap = session.snapshot()

    assert snap["story"] == "story"
    assert snap["loading"] is False
    assert len(snap["panels"]) == 4
    first = snap["panels"][0]
    assert first["index"] == 1
    assert first["story"] == "one"
    assert first["image"].startswith("data:image/png;base64,")
    assert first["characters"][0].startswith("data:image/png;base64,")
    assert first["can_regenerate"] is True


def test_oversized_reference_returns_panel_to_idle(monkeypatch, session, fake_client):
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    session.add_characters(0, [ref("huge.png")])
    session.set_panel_story(0, "one")

    assert session.regenerate_panel(0) is False

    p = session.panels[0]
    assert not p.is_generating
    assert p.image is None
    assert session.error.startswith("Panel 1 Error: Could not load character image huge.png")
    assert session.can_regenerate(0)
    assert fake_client.image_calls == []


def test_unexpected_failure_still_ends_generation(fake_client):
    def broken(characters, aspect_ratio):
        raise RuntimeError("boom")

    session = StoryboardSession(client=fake_client, compositor=broken)
    session.set_panel_story(2, "three")

    with pytest.raises(RuntimeError):
        session.regenerate_panel(2)

    assert not session.panels[2].is_generating
    assert session.can_regenerate(2)
