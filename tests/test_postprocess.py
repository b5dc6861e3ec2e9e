import pytest

from app.agents.postprocess import ResponsePostProcessor, extract_suggested_actions
from app.nlp.hebrew import LRO, PDF


def test_hebrew_reply_is_formatted_for_rtl():
    result = ResponsePostProcessor().process(
        "ההזמנה שלכ מספר 123   נשלחה\n\n\n\nתודה רבה", True, model="gpt-4"
    )

    assert f"{LRO}123{PDF}" in result.content
    assert "שלך" in result.content
    assert "\n\n\n" not in result.content
    assert result.metadata["rtl_formatted"] is True
    assert result.metadata["language"] == "he"
    assert result.metadata["model"] == "gpt-4"
    assert result.confidence == 0.95


def test_english_reply_is_only_trimmed():
    result = ResponsePostProcessor().process("  Your order shipped.  ", False, language="en")

    assert result.content == "Your order shipped."
    assert result.metadata["rtl_formatted"] is False
    assert result.metadata["language"] == "en"
    assert "processed_at" in result.metadata


def test_suggested_actions_in_order_without_duplicates():
    text = (
        "Shall I open a ticket? האם תרצה שאשלח לך את הטופס? "
        "Would you like me to call you back? Shall I open a ticket?"
    )
    assert extract_suggested_actions(text) == [
        "open a ticket",
        "אשלח לך את הטופס",
        "call you back",
    ]


def test_no_actions_when_nothing_offered():
    assert extract_suggested_actions("ההזמנה נשלחה.") == []
    assert extract_suggested_actions("") == []


def test_confidence_must_be_in_range():
    with pytest.raises(ValueError):
        ResponsePostProcessor(0)
    assert ResponsePostProcessor(1.0).process("ok", False).confidence == 1.0
