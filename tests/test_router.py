from __future__ import annotations

import threading
import time

import pytest

from askbot.errors import ConfigurationError, InvalidInput, UpstreamError
from askbot.history import ConversationStore, Turn
from askbot.providers import Attachment
from askbot.router import DEFAULT_SYSTEM_PROMPT, ProviderRouter


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore()


def test_free_request_uses_primary_only(store, make_provider):
    primary = make_provider("gemini", reply="free reply")
    secondary = make_provider("deepseek", reply="premium reply")
    router = ProviderRouter(store, primary, secondary)

    assert router.generate("u1", "hello", is_premium=False) == "free reply"
    assert secondary.calls == []
    assert primary.calls == [[Turn("user", "hello")]]
    assert store.snapshot("u1") == (Turn("user", "hello"), Turn("assistant", "free reply"))


def test_premium_request_pins_identity_on_secondary(store, make_provider):
    primary = make_provider("gemini")
    secondary = make_provider("deepseek", reply="I am AskBot")
    router = ProviderRouter(store, primary, secondary)

    store.append("u1", Turn("user", "earlier"))
    store.append("u1", Turn("assistant", "earlier reply"))
    assert router.generate("u1", "who are you?", is_premium=True) == "I am AskBot"

    assert primary.calls == []
    sent = secondary.calls[0]
    assert sent[0] == Turn("system", DEFAULT_SYSTEM_PROMPT)
    assert [t.content for t in sent[1:]] == ["earlier", "earlier reply", "who are you?"]
    assert store.snapshot("u1")[-1] == Turn("assistant", "I am AskBot")


def test_premium_failure_falls_back_once_without_system_turn(store, make_provider):
    primary = make_provider("gemini", reply="from gemini")
    secondary = make_provider("deepseek", fail=True)
    router = ProviderRouter(store, primary, secondary)

    assert router.generate("u1", "hi", is_premium=True) == "from gemini"
    assert len(secondary.calls) == 1
    assert len(primary.calls) == 1
    assert all(t.role != "system" for t in primary.calls[0])
    assert store.snapshot("u1") == (Turn("user", "hi"), Turn("assistant", "from gemini"))


def test_premium_without_secondary_configured_uses_primary(store, make_provider):
    primary = make_provider("gemini", reply="fallback")
    router = ProviderRouter(store, primary, None)
    assert router.generate("u1", "hi", is_premium=True) == "fallback"
    assert len(primary.calls) == 1


def test_non_upstream_exception_from_secondary_still_falls_back(store, make_provider):
    class Exploding:
        name = "deepseek"
        model = "x"

        def complete(self, turns):
            raise RuntimeError("connection reset")

    primary = make_provider("gemini", reply="saved")
    router = ProviderRouter(store, primary, Exploding())
    assert router.generate("u1", "hi", is_premium=True) == "saved"


def test_both_providers_failing_keeps_only_user_turn(store, make_provider):
    primary = make_provider("gemini", fail=True)
    secondary = make_provider("deepseek", fail=True)
    router = ProviderRouter(store, primary, secondary)

    with pytest.raises(UpstreamError) as excinfo:
        router.generate("u1", "hi", is_premium=True)

    assert "gemini" in str(excinfo.value)
    assert len(secondary.calls) == 1
    assert len(primary.calls) == 1
    assert store.snapshot("u1") == (Turn("user", "hi"),)


def test_primary_failure_is_fatal_for_free_users(store, make_provider):
    primary = make_provider("gemini", fail=True)
    secondary = make_provider("deepseek")
    router = ProviderRouter(store, primary, secondary)

    with pytest.raises(UpstreamError):
        router.generate("u1", "hi")
    assert secondary.calls == []
    assert store.snapshot("u1") == (Turn("user", "hi"),)


@pytest.mark.parametrize("message", [None, 42, "", "   "])
def test_invalid_message_rejected_before_store_changes(store, make_provider, message):
    router = ProviderRouter(store, make_provider("gemini"))
    with pytest.raises(InvalidInput):
        router.generate("u1", message)
    assert store.identities() == []


def test_missing_primary_is_a_configuration_error(store):
    router = ProviderRouter(store, None)
    with pytest.raises(ConfigurationError):
        router.generate("u1", "hi")
    assert store.snapshot("u1") == ()


def test_provider_sees_trimmed_history(make_provider):
    store = ConversationStore(window=3)
    primary = make_provider("gemini", reply="r")
    router = ProviderRouter(store, primary)

    router.generate("u1", "one")
    router.generate("u1", "two")

    # by the third call "one" and the first reply have been evicted
    router.generate("u1", "three")
    assert [t.content for t in primary.calls[-1]] == ["two", "r", "three"]
    assert len(store.snapshot("u1")) == 3


def test_multimodal_sends_text_and_images(store, make_provider):
    vision = make_provider("gemini-vision", reply="a cat")
    primary = make_provider("gemini")
    router = ProviderRouter(store, primary, vision=vision)
    image = Attachment("image/png", b"\x89PNG")
    other = Attachment("application/pdf", b"%PDF")

    assert router.generate_multimodal("u1", "what is this?", [image, other]) == "a cat"
    assert vision.calls == [("what is this?", [image])]
    assert primary.calls == []
    assert store.snapshot("u1") == (Turn("user", "what is this?"), Turn("assistant", "a cat"))


def test_multimodal_without_images_is_invalid(store, make_provider):
    router = ProviderRouter(store, make_provider("gemini"), vision=make_provider("v"))
    with pytest.raises(InvalidInput):
        router.generate_multimodal("u1", "hi", [Attachment("text/plain", b"x")])


def test_multimodal_failure_has_no_fallback(store, make_provider):
    primary = make_provider("gemini")
    router = ProviderRouter(store, primary, vision=make_provider("v", fail=True))
    with pytest.raises(UpstreamError):
        router.generate_multimodal("u1", "", [Attachment("image/jpeg", b"jpg")])
    assert primary.calls == []
    assert store.snapshot("u1") == (Turn("user", "[1 image attachment(s)]"),)


def test_relay_is_stateless(store, make_provider):
    primary = make_provider("gemini", reply="stateless")
    router = ProviderRouter(store, primary)
    turns = [Turn("user", "a"), Turn("assistant", "b"), Turn("user", "c")]

    assert router.relay(turns) == "stateless"
    assert primary.calls == [turns]
    assert store.identities() == []


def test_probe_secondary_reports_outcome(store, make_provider):
    ok = ProviderRouter(store, None, make_provider("deepseek", reply="AskBot here"))
    assert ok.probe_secondary() == {"success": True, "provider": "deepseek", "response": "AskBot here"}

    failing = ProviderRouter(store, None, make_provider("deepseek", fail=True))
    result = failing.probe_secondary()
    assert result["success"] is False
    assert "boom" in result["error"]

    missing = ProviderRouter(store, None, None)
    assert missing.probe_secondary()["success"] is False


def test_slow_provider_does_not_hold_the_conversation_lock(store):
    gate = threading.Event()
    all_in_flight = threading.Event()
    entered = []

    class SlowOnWait:
        name = "gemini"
        model = "x"

        def complete(self, turns):
            if turns[-1].content == "wait":
                entered.append(1)
                if len(entered) == 3:
                    all_in_flight.set()
                gate.wait(timeout=5)
            return "done"

    router = ProviderRouter(store, SlowOnWait())
    workers = [threading.Thread(target=router.generate, args=("default", "wait")) for _ in range(3)]
    for w in workers:
        w.start()
    try:
        # all three calls on the shared bucket reach the provider at once
        assert all_in_flight.wait(timeout=2)

        # another user is served while the shared bucket has calls in flight
        t0 = time.monotonic()
        assert router.generate("bob", "hi") == "done"
        assert time.monotonic() - t0 < 1.0

        # the busy bucket itself stays writable from another thread
        appended = threading.Event()

        def writer() -> None:
            store.append("default", Turn("user", "side"))
            appended.set()

        t = threading.Thread(target=writer)
        t.start()
        assert appended.wait(timeout=1.0)
        t.join(timeout=2.0)
    finally:
        gate.set()
        for w in workers:
            w.join(timeout=5)

    assert [t.content for t in store.snapshot("default")].count("done") == 3
