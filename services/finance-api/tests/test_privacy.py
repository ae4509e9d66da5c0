from decimal import Decimal

from shared.observability.privacy import hash_payload, scrub_free_text


def test_scrub_free_text_hashes_user_text_and_stringifies_amounts() -> None:
    scrubbed = scrub_free_text(
        {"category": "Food", "amount": Decimal("12.50"), "description": "birthday dinner for Sam", "title": ""}
    )

    assert scrubbed["category"] == "Food"
    assert scrubbed["amount"] == "12.50"
    assert scrubbed["description"] == f"sha256:{hash_payload('birthday dinner for Sam')[:12]}"
    assert "Sam" not in str(scrubbed)
    assert scrubbed["title"] is None


def test_scrub_free_text_accepts_extra_fields() -> None:
    scrubbed = scrub_free_text({"merchant": "Corner Shop"}, extra_fields=("merchant",))

    assert scrubbed["merchant"].startswith("sha256:")


def test_hash_payload_is_stable_for_equal_structures() -> None:
    assert hash_payload({"b": 1, "a": Decimal("2")}) == hash_payload({"a": Decimal("2"), "b": 1})
    assert hash_payload(None) != hash_payload("")
