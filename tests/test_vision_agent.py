import json

import pytest
from openai import OpenAIError

from fakes import OK, FakeOsAdapter, FakePointer, FakeScreenshots, FakeVisionService
from os_autopilot.agents import vision_agent as va
from os_autopilot.agents.vision_agent import VisualFeedbackLoop
from os_autopilot.core.config import ClickSettings
from os_autopilot.core.tal import ErrorKind, ProcessResult, VisualAction

FAIL = ProcessResult(exit_code=1, stderr="execution error: System Events got an error")


def action_reply(**fields):
    return json.dumps({"success": True, "confidence": 0.9, **fields})


@pytest.fixture
def shots(tmp_path):
    return FakeScreenshots(tmp_path / "shots")


def make_loop(shots, replies=None, os_results=None, pointer=None, default=OK):
    return VisualFeedbackLoop(
        vision=FakeVisionService(replies=replies),
        screenshots=shots,
        os_adapter=FakeOsAdapter(results=os_results, default=default),
        pointer=pointer,
        clicks=ClickSettings(fallback_delay=0.0, wait_seconds=0.0),
        sleep=lambda s: None,
    )


def test_coordinate_click_uses_precision_tool(shots):
    pointer = FakePointer()
    loop = make_loop(shots, replies=[action_reply(action="CLICK", coordinates=[100, 100])], pointer=pointer)

    outcome = loop.perform_visual_guided_action("search youtube", "click the search box")

    assert outcome.success
    assert pointer.clicks == [(100, 100)]
    assert outcome.attempted_methods == [va.PRECISION_CLICK]
    assert outcome.confidence == 0.9
    assert not outcome.used_fallback


def test_coordinate_click_without_precision_tool_uses_applescript(shots):
    loop = make_loop(
        shots, replies=[action_reply(action="CLICK", coordinates=[100, 100])], pointer=FakePointer(available=False)
    )
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.attempted_methods == [va.FRONTMOST_CLICK]
    assert "click at {100, 100}" in loop.os_adapter.scripts[0]


def test_all_click_fallbacks_exhausted_in_order(shots):
    pointer = FakePointer(ok=False)
    loop = make_loop(
        shots, replies=[action_reply(action="CLICK", coordinates=[100, 100])], pointer=pointer, default=FAIL
    )

    outcome = loop.perform_visual_guided_action("search youtube", "click the search box")

    assert outcome.success is False
    assert outcome.error_kind is ErrorKind.ALL_FALLBACKS_EXHAUSTED
    assert outcome.attempted_methods == [
        va.PRECISION_CLICK,
        va.FALLBACK_COORDINATE,
        va.FALLBACK_MOUSE_MOVE,
        va.FALLBACK_PRECISION,
        va.FALLBACK_CENTER,
    ]
    assert outcome.error.startswith("All 4 fallback methods failed")
    assert pointer.clicks == [(100, 100), (100, 100)]
    assert "click at {640, 400}" in loop.os_adapter.scripts[-1][0]
    # transient screenshot removed
    assert list(shots.directory.iterdir()) == []


def test_fallback_stops_at_first_success(shots):
    loop = make_loop(
        shots,
        replies=[action_reply(action="CLICK", coordinates=[10, 20])],
        pointer=FakePointer(available=False),
        os_results=[FAIL, FAIL, OK],
    )
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.success and outcome.used_fallback
    assert outcome.fallback_method == va.FALLBACK_MOUSE_MOVE
    assert len(loop.os_adapter.scripts) == 3


def test_target_click_tries_element_chain(shots):
    loop = make_loop(shots, replies=[action_reply(action="CLICK", target='Save "draft"')])
    outcome = loop.perform_visual_guided_action("t", "s")
    script = loop.os_adapter.scripts[0]
    assert outcome.attempted_methods == [va.ELEMENT_CLICK]
    assert 'click UI element "Save \\"draft\\"" of window 1' in script
    assert 'click button "Save \\"draft\\"" of window 1' in script
    assert "click first button of window 1" in script
    assert "click at {500, 400}" in script


def test_target_click_failure_falls_back_to_screen_center(shots):
    loop = make_loop(shots, replies=[action_reply(action="CLICK", target="OK")], os_results=[FAIL, FAIL])
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.error_kind is ErrorKind.ALL_FALLBACKS_EXHAUSTED
    assert outcome.attempted_methods == [va.ELEMENT_CLICK, va.FALLBACK_CENTER]


def test_type_pastes_through_clipboard(shots):
    loop = make_loop(shots, replies=[action_reply(action="TYPE", text='say "hi"')])
    assert loop.perform_visual_guided_action("t", "s").success
    script = loop.os_adapter.scripts[0]
    assert script[0] == 'set the clipboard to "say \\"hi\\""'
    assert 'keystroke "v" using command down' in script


@pytest.mark.parametrize("key,expected", [("Enter", "keystroke return"), ("Tab", "keystroke tab"), ("Escape", "key code 53"), ("a", 'keystroke "a"')])
def test_key_press_mapping(shots, key, expected):
    loop = make_loop(shots, replies=[action_reply(action="KEY_PRESS", key=key)])
    loop.perform_visual_guided_action("t", "s")
    assert loop.os_adapter.scripts == [[f'tell application "System Events" to {expected}']]


def test_scroll_and_wait(shots):
    loop = make_loop(shots)
    up = loop.execute_visual_action(VisualAction(action="scroll", target="up"))
    assert up.success and "key code 126" in loop.os_adapter.scripts[0]
    waited = loop.execute_visual_action(VisualAction(action="wait"))
    assert waited.success and len(loop.os_adapter.scripts) == 1


def test_non_click_failures_do_not_use_fallbacks(shots):
    loop = make_loop(shots, replies=[action_reply(action="TYPE", text="x")], default=FAIL)
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.error_kind is ErrorKind.EXECUTION_FAILED
    assert outcome.attempted_methods == [va.CLIPBOARD_PASTE]


def test_screenshot_failure(tmp_path):
    loop = make_loop(FakeScreenshots(tmp_path, fail=True))
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.error_kind is ErrorKind.SCREENSHOT_FAILED
    assert loop.vision.calls == []


@pytest.mark.parametrize(
    "reply",
    [
        action_reply(action="DRAG", coordinates=[1, 2]),
        "I think you should click the button",
        json.dumps({"success": False, "error": "nothing matches"}),
        OpenAIError("rate limited"),
        action_reply(action="CLICK", coordinates={"x": 100}),
        action_reply(action="CLICK", coordinates=[None, 5]),
        json.dumps({"action": "WAIT", "confidence": [0.9]}),
        action_reply(action="CLICK", coordinates=["left", "top"]),
    ],
)
def test_bad_vision_replies(shots, reply):
    loop = make_loop(shots, replies=[reply])
    outcome = loop.perform_visual_guided_action("t", "s")
    assert outcome.error_kind is ErrorKind.VISION_ANALYSIS_FAILED
    assert loop.os_adapter.scripts == []
    assert list(shots.directory.iterdir()) == []


def test_screenshot_exists_during_request_and_is_removed_after(shots):
    loop = make_loop(shots, replies=[action_reply(action="WAIT")])
    loop.perform_visual_guided_action("t", "s")
    assert loop.vision.image_existed == [True]
    assert loop.vision.calls[0]["json_mode"] is True
    assert not any(p.exists() for p in shots.captured)


def test_analyze_scene(shots):
    loop = make_loop(shots, replies=["  Safari is open on google.com. "])
    result = loop.analyze_scene("search for cats", "What is on screen?")
    assert result.value == "Safari is open on google.com."
    assert "search for cats" in loop.vision.calls[0]["question"]
    assert list(shots.directory.iterdir()) == []


def test_analyze_scene_failure(shots):
    loop = make_loop(shots, replies=[OpenAIError("down")])
    assert loop.analyze_scene("t", "q").error_kind is ErrorKind.VISION_ANALYSIS_FAILED
