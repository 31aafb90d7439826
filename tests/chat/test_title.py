from dragonchat.chat.reconciler import TranscriptMessage
from dragonchat.chat.title import derive_title


def test_short_first_user_message_is_title():
    msgs = [TranscriptMessage("user", "Plan a trip to Lisbon")]

    assert derive_title(msgs) == "Plan a trip to Lisbon"


def test_long_message_is_truncated_with_ellipsis():
    text = "x" * 60

    assert derive_title([TranscriptMessage("user", text)]) == "x" * 50 + "..."


def test_exactly_fifty_characters_is_not_truncated():
    text = "y" * 50

    assert derive_title([TranscriptMessage("user", text)]) == text


def test_whitespace_is_collapsed():
    assert derive_title([TranscriptMessage("user", "  hello \n\n world ")]) == "hello world"


def test_falls_back_to_default_title():
    assert derive_title([]) == "New Chat"
    assert derive_title([TranscriptMessage("user", "")]) == "New Chat"
    assert derive_title([TranscriptMessage("assistant", "hi")], default="Untitled") == "Untitled"
