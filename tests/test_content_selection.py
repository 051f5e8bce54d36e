from __future__ import annotations

from pathlib import Path

import pytest

from guidance_policy import content
from guidance_policy.adapters.content_loader import BUNDLED_CONTENT_PATH, load_content_rows, load_content_set
from guidance_policy.content import (
    LADDER_GUIDANCE,
    ContentSet,
    compose_seed,
    scrub_identifiers,
)
from guidance_policy.contracts import ContentRow, ContentSetLoadError, OverrideSubtype
from guidance_policy.stable_ids import SYNTHETIC_FALLBACK_ROW_ID, rolling_hash


def test_bundled_content_rows_carry_file_line_ids() -> None:
    rows = load_content_rows(BUNDLED_CONTENT_PATH)
    assert len(rows) == 16
    assert rows[0].row_id == "sql-engage:2"
    assert rows[0].error_subtype == "incomplete query"
    assert rows[-1].row_id == "sql-engage:17"


def test_missing_columns_load_nothing(tmp_path: Path) -> None:
    p = tmp_path / "partial.csv"
    p.write_text("query,error_subtype\nSELECT 1,incomplete query\n", encoding="utf-8")
    assert load_content_rows(p) == []
    assert len(load_content_set(p)) == 0


def test_unreadable_file_raises_load_error(tmp_path: Path) -> None:
    with pytest.raises(ContentSetLoadError):
        load_content_rows(tmp_path / "missing.csv")


@pytest.mark.parametrize(
    "raw",
    ["", "   ", "Undefined Column", "no such column", "frobnicated query", "AMBIGUOUS TABLE", "undefined table"],
)
def test_canonicalize_is_idempotent(content_set: ContentSet, raw: str) -> None:
    once = content_set.canonicalize(raw)
    assert content_set.canonicalize(once) == once


def test_unknown_subtype_falls_back_to_dataset_default(content_set: ContentSet) -> None:
    assert content_set.default_subtype == "incomplete query"
    assert content_set.canonicalize("frobnicated query") == "incomplete query"
    assert content_set.canonicalize(None) == "incomplete query"
    assert content_set.canonicalize("No Such Column") == "undefined column"


def test_default_subtype_without_incomplete_query_rows() -> None:
    rows = [
        ContentRow(row_id="r1", error_subtype="undefined table"),
        ContentRow(row_id="r2", error_subtype="missing commas"),
    ]
    assert ContentSet(rows).default_subtype == "missing commas"


def test_selection_is_deterministic(content_set: ContentSet) -> None:
    seed = compose_seed("learner-1", "problem-1", "undefined column", 2)
    first = content_set.select_content("undefined column", 2, seed)
    second = content_set.select_content("undefined column", 2, seed)
    assert first == second
    assert first.model_dump() == second.model_dump()


def test_row_choice_follows_rolling_hash(content_set: ContentSet) -> None:
    seed = compose_seed("learner-7", "problem-3", "undefined column", 1)
    rows = content_set.rows_for("undefined column")
    assert len(rows) == 3

    selection = content_set.select_content("undefined column", 1, seed)
    assert selection.row_id == rows[rolling_hash(seed) % len(rows)].row_id


def test_compose_seed_defaults_blank_parts() -> None:
    assert compose_seed("", " ", "incomplete query", 1) == "anonymous-learner|unknown-problem|incomplete query|L1"


def test_level_above_ladder_clamps_text_and_flags_escalation(content_set: ContentSet) -> None:
    selection = content_set.select_content("undefined table", 4, "seed")
    assert selection.hint_level == 3
    assert selection.requested_level == 4
    assert selection.should_escalate is True
    assert selection.hint_text.startswith(LADDER_GUIDANCE["undefined table"][2])

    within = content_set.select_content("undefined table", 3, "seed")
    assert within.should_escalate is False


def test_level_one_text_is_the_ladder_sentence(content_set: ContentSet) -> None:
    selection = content_set.select_content("undefined column", 1, "seed")
    assert selection.hint_text == LADDER_GUIDANCE["undefined column"][0]


def test_level_three_text_scrubs_quoted_identifiers(content_set: ContentSet) -> None:
    for seed in ("a", "b", "c", "d"):
        selection = content_set.select_content("undefined column", 3, seed)
        assert "'" not in selection.hint_text
        assert "the referenced item" in selection.hint_text


def test_scrub_identifiers() -> None:
    assert scrub_identifiers("The column 'salry' is   missing.") == "The column the referenced item is missing."
    assert scrub_identifiers('Table "emp" not found') == "Table the referenced item not found"


def test_fallback_subtype_is_reported(content_set: ContentSet) -> None:
    unknown = content_set.select_content("frobnicated query", 1, "seed")
    assert unknown.subtype == "incomplete query"
    assert unknown.requested_subtype == "frobnicated query"
    assert unknown.used_fallback_subtype is True

    aliased = content_set.select_content("no such column", 1, "seed")
    assert aliased.subtype == "undefined column"
    assert aliased.used_fallback_subtype is False


def test_override_replaces_requested_subtype(content_set: ContentSet) -> None:
    selection = content_set.select_content(
        "undefined column", 1, "seed", override=OverrideSubtype(subtype="undefined table")
    )
    assert selection.subtype == "undefined table"
    assert selection.requested_subtype == "undefined table"


def test_empty_content_set_uses_synthetic_row() -> None:
    selection = ContentSet([]).select_content("undefined column", 2, "seed")
    assert selection.row_id == SYNTHETIC_FALLBACK_ROW_ID
    assert selection.subtype == "incomplete query"
    assert selection.hint_text.startswith(LADDER_GUIDANCE["incomplete query"][1])


def test_concept_ids_for_subtype(content_set: ContentSet) -> None:
    assert content_set.concept_ids_for("undefined table") == ("joins",)
    assert content_set.concept_ids_for(None) == ()


def test_module_level_selection_uses_bundled_sample(
    content_set: ContentSet, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GUIDANCE_CONTENT_CSV", raising=False)

    assert content.default_content_set() is content_set
    assert content.canonicalize("  Missing Commas ") == content_set.canonicalize("  Missing Commas ")
    assert content.select_content("missing commas", 1, "seed") == content_set.select_content(
        "missing commas", 1, "seed"
    )


def test_module_level_selection_follows_configured_csv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    csv_path = tmp_path / "content.csv"
    csv_path.write_text(
        "query,error_type,error_subtype,emotion,feedback_target,intended_learning_outcome\n"
        "SELECT a b FROM t,syntax,missing commas,confused,Separate 'a' and 'b'.,List columns with commas.\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GUIDANCE_CONTENT_CSV", str(csv_path))

    assert len(content.default_content_set()) == 1
    assert content.canonicalize("Missing Commas") == "missing commas"
    selection = content.select_content("missing commas", 1, "seed")
    assert selection.row_id == "sql-engage:2"
    assert selection.used_fallback_subtype is False
