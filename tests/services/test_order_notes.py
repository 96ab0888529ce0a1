"""Tests for typed order notes."""

import json

from giftflow.services.order_notes import append_audit_note, load_notes, merge_notes


def test_blank_notes_load_defaults(make_order):
    notes = load_notes(make_order())
    assert notes.version == 1
    assert notes.audit_notes == []


def test_unknown_keys_are_kept_in_extras(make_order):
    order = make_order(notes_json=json.dumps({"tracking_url": "https://t", "legacy_flag": True}))

    notes = load_notes(order)

    assert notes.tracking_url == "https://t"
    assert notes.extras == {"legacy_flag": True}


def test_malformed_notes_are_preserved(make_order):
    order = make_order(notes_json="{not json")
    assert load_notes(order).extras == {"unparsed": "{not json"}


def test_merge_is_additive(make_order):
    order = make_order()
    merge_notes(order, tracking_url="https://t", carrier="UPS")

    merge_notes(order, carrier=None, provider_status="shipped", gift_wrap="blue")

    notes = load_notes(order)
    assert notes.tracking_url == "https://t"
    assert notes.carrier == "UPS"
    assert notes.provider_status == "shipped"
    assert notes.extras["gift_wrap"] == "blue"


def test_audit_notes_append(make_order):
    order = make_order()
    append_audit_note(order, "first")
    append_audit_note(order, "second", author="admin")

    notes = load_notes(order)
    assert [n.text for n in notes.audit_notes] == ["first", "second"]
    assert notes.audit_notes[1].author == "admin"
