"""Unit tests for locality-based item selection."""

import pytest

from weather_image_service.errors import NoMatchingItemsError
from weather_image_service.models import CandidateItem
from weather_image_service.selection import (
    MATCH_ALL,
    MATCH_EXACT,
    MATCH_FALLBACK,
    MATCH_SUBSTRING,
    normalize,
    select_items,
)


def _item(item_id, name, region=None):
    return CandidateItem(id=item_id, name=name, region=region)


def _select(candidates, locality_filter, requested_max=10, hard_cap=50, fallback_cap=3, strict=False):
    return select_items(
        candidates,
        locality_filter,
        requested_max=requested_max,
        hard_cap=hard_cap,
        fallback_cap=fallback_cap,
        strict=strict,
    )


def test_normalize_strips_diacritics_punctuation_and_case():
    assert normalize("Fryslân") == "fryslan"
    assert normalize("  Noord-Holland ") == "noordholland"
    assert normalize("'s-Hertogenbosch") == "shertogenbosch"
    assert normalize(None) == ""


def test_no_filter_takes_candidates_in_order():
    candidates = [_item(str(i), f"Station {i}") for i in range(5)]
    selection = _select(candidates, None, requested_max=3)
    assert [c.id for c in selection.items] == ["0", "1", "2"]
    assert selection.match_kind == MATCH_ALL


def test_filter_of_only_punctuation_means_no_filter():
    candidates = [_item("1", "A", "Utrecht"), _item("2", "B", "Zeeland")]
    selection = _select(candidates, " -- ")
    assert selection.match_kind == MATCH_ALL
    assert len(selection.items) == 2


def test_substring_match_keeps_original_order():
    candidates = [_item("1", "Hoorn", "Noord-Holland"), _item("2", "Rotterdam", "Zuid-Holland")]
    selection = _select(candidates, "Holland")
    assert [c.id for c in selection.items] == ["1", "2"]
    assert selection.match_kind == MATCH_SUBSTRING


def test_exact_region_match_takes_precedence_over_substring():
    candidates = [
        _item("1", "Hoorn", "Noord-Holland"),
        _item("2", "Gouda", "Holland"),
        _item("3", "Rotterdam", "Zuid-Holland"),
    ]
    selection = _select(candidates, "holland")
    assert [c.id for c in selection.items] == ["2"]
    assert selection.match_kind == MATCH_EXACT


def test_exact_match_ignores_diacritics_and_punctuation():
    candidates = [_item("1", "Leeuwarden", "Fryslân"), _item("2", "Den Helder", "Noord Holland")]
    assert [c.id for c in _select(candidates, "fryslan").items] == ["1"]
    assert [c.id for c in _select(candidates, "noord-holland").items] == ["2"]


def test_substring_matches_name_when_region_missing():
    candidates = [_item("1", "Rotterdam Airport"), _item("2", "Schiphol")]
    selection = _select(candidates, "rotterdam")
    assert [c.id for c in selection.items] == ["1"]


def test_no_match_falls_back_to_first_fallback_cap_candidates():
    candidates = [_item(str(i), f"Station {i}", "Utrecht") for i in range(8)]
    selection = _select(candidates, "Berlin", requested_max=10, fallback_cap=3)
    assert [c.id for c in selection.items] == ["0", "1", "2"]
    assert selection.match_kind == MATCH_FALLBACK


def test_no_match_in_strict_mode_raises():
    candidates = [_item("1", "Station", "Utrecht")]
    with pytest.raises(NoMatchingItemsError):
        _select(candidates, "Berlin", strict=True)


def test_selection_size_is_min_of_requested_cap_and_available():
    candidates = [_item(str(i), f"Station {i}") for i in range(20)]
    assert len(_select(candidates, None, requested_max=15, hard_cap=5).items) == 5
    assert len(_select(candidates, None, requested_max=4, hard_cap=50).items) == 4
    assert len(_select(candidates[:2], None, requested_max=10, hard_cap=50).items) == 2


def test_selection_is_deterministic():
    candidates = [_item(str(i), f"Station {i}", "Zuid-Holland" if i % 2 else "Utrecht") for i in range(30)]
    first = _select(candidates, "zuid", requested_max=7)
    for _ in range(5):
        again = _select(candidates, "zuid", requested_max=7)
        assert [c.id for c in again.items] == [c.id for c in first.items]


def test_repeated_and_blank_ids_are_dropped_first_occurrence_wins():
    candidates = [
        _item("", "Nameless"),
        _item("6260", "Meetstation De Bilt", "Utrecht"),
        _item("", "Also nameless"),
        _item("6260", "Meetstation De Bilt copy", "Utrecht"),
        _item("6269", "Meetstation Lelystad", "Lelystad"),
    ]
    selection = _select(candidates, None, requested_max=3)
    assert [c.id for c in selection.items] == ["6260", "6269"]
    assert selection.items[0].name == "Meetstation De Bilt"


def test_repeated_ids_do_not_take_fallback_slots():
    candidates = [_item("1", "A"), _item("1", "A again"), _item("2", "B"), _item("3", "C")]
    selection = _select(candidates, "nowhere", requested_max=10, fallback_cap=2)
    assert selection.match_kind == MATCH_FALLBACK
    assert [c.id for c in selection.items] == ["1", "2"]
