from datetime import datetime, timezone

from historia.memory.models import (
    AuthorRole,
    Conversation,
    Turn,
    derive_preview,
    derive_title,
    matches_text,
    parse_iso,
    to_iso,
    truncate_preview,
)


def test_title_uses_first_four_words():
    assert derive_title("What is virtue in the end", "Socrates") == "Chat with Socrates: What is virtue in"


def test_long_title_is_cut_to_fifty_chars():
    title = derive_title("Extraordinarily complicated mechanical contraptions", "Leonardo da Vinci")
    assert len(title) == 50
    assert title.endswith("...")
    assert title.startswith("Chat with Leonardo da Vinci: Extraordinarily")


def test_preview_truncates_long_text():
    assert truncate_preview("x" * 100) == "x" * 100
    assert truncate_preview("x" * 101) == "x" * 100 + "..."


def test_preview_marks_images():
    base = dict(author_role=AuthorRole.USER, author_id="u", author_display_name="You")
    with_text = Turn.create(body="look at this", image_ref="https://img/a.png", **base)
    without_text = Turn.create(body="", image_ref="https://img/a.png", **base)
    plain = Turn.create(body="y" * 150, **base)

    assert derive_preview(with_text) == "📷 look at this"
    assert derive_preview(without_text) == "📷 Shared an image"
    assert derive_preview(plain) == "y" * 100 + "..."


def test_turn_row_mapping():
    turn = Turn.create(
        author_role=AuthorRole.PERSONA,
        author_id="socrates",
        author_display_name="Socrates",
        body="Know thyself.",
        conversation_id="c1",
        image_ref="https://img/a.png",
        image_label="a.png",
    )
    row = turn.to_row()
    assert row["is_from_user"] is False
    assert row["has_image"] is True
    assert row["sender_name"] == "Socrates"

    back = Turn.from_row(row)
    assert back == turn
    assert back.has_attachment


def test_turn_is_frozen_and_replaced_by_body():
    turn = Turn.create(author_role=AuthorRole.PERSONA, author_id="p", author_display_name="P", body="")
    updated = turn.with_body("Hello")
    assert updated.id == turn.id
    assert turn.body == ""
    assert updated.body == "Hello"


def test_parse_iso_accepts_zulu_and_naive():
    assert parse_iso("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_iso("2024-03-01T10:00:00").tzinfo is not None
    assert to_iso(datetime(2024, 3, 1, 10)) == "2024-03-01T10:00:00.000000+00:00"


def test_matches_text_is_case_insensitive_over_title_and_preview():
    conv = Conversation.from_row({
        "id": "c1",
        "user_id": "u",
        "character_id": "socrates",
        "title": "Chat with Socrates: Virtue",
        "preview": "On the École of Athens",
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
        "last_message_at": "2024-01-01T00:00:00+00:00",
    })
    assert matches_text(conv, "VIRTUE")
    assert matches_text(conv, "école")
    assert not matches_text(conv, "sparta")
