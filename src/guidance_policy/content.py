# guidance_policy/content.py
from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping

from guidance_policy.contracts import AUTO, ContentRow, HintSelection, OverrideSubtype, SubtypeOverride
from guidance_policy.stable_ids import DEFAULT_SUBTYPE_LABEL, SYNTHETIC_FALLBACK_ROW_ID, rolling_hash

logger = logging.getLogger(__name__)

CONTENT_POLICY_VERSION = "sql-engage-index-v3-hintid-contract"

SUBTYPE_ALIASES: Mapping[str, str] = {
    "unknown column": "undefined column",
    "no such column": "undefined column",
    "column not found": "undefined column",
    "unknown table": "undefined table",
    "no such table": "undefined table",
    "table not found": "undefined table",
    "unknown function": "undefined function",
    "no such function": "undefined function",
    "function not found": "undefined function",
    "ambiguous column": "ambiguous reference",
    "ambiguous table": "ambiguous reference",
    "ambiguous identifier": "ambiguous reference",
}

LADDER_GUIDANCE: Mapping[str, tuple[str, str, str]] = {
    "incomplete query": (
        "Start by completing the missing part of your SQL statement.",
        "Check whether each clause is present and complete before running again.",
        "Build the query incrementally: SELECT -> FROM -> WHERE/JOIN/GROUP BY, validating each step.",
    ),
    "undefined table": (
        "The table reference is likely incorrect.",
        "Verify the exact table name from the schema and use that spelling.",
        "Match every table in your query to a real schema table, then retry.",
    ),
    "undefined column": (
        "One or more column names do not match the schema.",
        "Compare your selected/filtered columns against the exact column names in the table.",
        "Rewrite the query with only verified column names, then add extra fields one at a time.",
    ),
    "undefined function": (
        "A function in the query is not recognized.",
        "Replace unsupported function names with functions available in this SQL dialect.",
        "Confirm function signatures and test the function on a small query first.",
    ),
    "ambiguous reference": (
        "A column reference is ambiguous across multiple tables.",
        "Prefix overlapping columns with table names or aliases.",
        "Use explicit aliases throughout SELECT, WHERE, GROUP BY, and ORDER BY.",
    ),
    "wrong positioning": (
        "A clause appears in the wrong order.",
        "Reorder clauses to standard SQL order.",
        "Use a fixed skeleton (SELECT -> FROM -> JOIN -> WHERE -> GROUP BY -> HAVING -> ORDER BY).",
    ),
    "aggregation misuse": (
        "Your aggregate function or grouping logic needs adjustment.",
        "Check that all non-aggregated columns in SELECT appear in GROUP BY.",
        "Apply aggregates only to values you want to summarize, and ensure GROUP BY includes all other selected columns.",
    ),
    "data type mismatch": (
        "A value does not match the expected data type for this operation.",
        "Compare the column type with the value you are providing.",
        "Convert values to the correct type before comparison or insertion.",
    ),
    "incorrect distinct usage": (
        "DISTINCT may be unnecessary or incorrectly applied.",
        "Check if the columns are already unique or if DISTINCT duplicates removal is actually needed.",
        "Remove redundant DISTINCT and rely on unique keys or GROUP BY when appropriate.",
    ),
    "incorrect group by usage": (
        "The GROUP BY clause is missing or contains incorrect columns.",
        "Ensure every non-aggregated column in SELECT is included in GROUP BY.",
        "Refactor the query to group by the exact set of non-aggregated columns.",
    ),
    "incorrect having clause": (
        "HAVING is being used incorrectly or filters are in the wrong place.",
        "Use HAVING only for conditions on aggregate results; move row filters to WHERE.",
        "Validate that aggregate conditions reference grouped data correctly.",
    ),
    "incorrect join usage": (
        "The JOIN condition or type is incorrect.",
        "Verify the join keys exist in both tables and the join type matches your intent.",
        "Specify explicit ON conditions and prefer explicit JOIN syntax over comma joins.",
    ),
    "incorrect order by usage": (
        "ORDER BY columns or direction are incorrect.",
        "Check that the sorting columns exist in the result set and ASC/DESC is intended.",
        "Limit sorting to necessary columns and ensure the order aligns with the requirement.",
    ),
    "incorrect select usage": (
        "The SELECT clause is missing required columns or includes invalid ones.",
        "List only columns needed and ensure they exist in the source tables.",
        "Build the column list incrementally, validating each against the schema.",
    ),
    "incorrect wildcard usage": (
        "Wildcards (*) are used incorrectly or too broadly.",
        "Replace * with explicit column names for clarity and performance.",
        "Select only the columns your application actually needs.",
    ),
    "inefficient query": (
        "The query can be rewritten for better performance.",
        "Look for unnecessary subqueries, redundant joins, or missing indexes.",
        "Simplify the query structure and ensure filters are applied as early as possible.",
    ),
    "missing commas": (
        "A comma is missing between columns or table references.",
        "Review the SELECT or FROM list and insert commas between items.",
        "Format lists with one item per line to make missing commas obvious.",
    ),
    "missing quotes": (
        "String literals are missing required quotes.",
        "Wrap text values in single quotes and escape embedded quotes properly.",
        "Consistently quote all string literals and verify special characters are escaped.",
    ),
    "missing semicolons": (
        "A statement terminator may be missing.",
        "End each SQL statement with a semicolon for clarity.",
        "Use semicolons consistently, especially in multi-statement batches.",
    ),
    "misspelling": (
        "A keyword or identifier appears to be misspelled.",
        "Compare the spelling against the schema and SQL keywords.",
        "Use consistent naming conventions and verify against the database catalog.",
    ),
    "non-standard operators": (
        "An operator is not recognized or is non-standard.",
        "Replace with standard SQL operators (e.g., = instead of ==).",
        "Verify operator syntax in the target SQL dialect documentation.",
    ),
    "operator misuse": (
        "An operator is being used incorrectly for this context.",
        "Check that the operator fits the data types and logic of the comparison.",
        "Review operator precedence and use parentheses to clarify intent.",
    ),
    "unmatched brackets": (
        "Opening and closing brackets or parentheses do not match.",
        "Count brackets to locate the mismatch and ensure proper nesting.",
        "Balance every opening bracket with a corresponding closing bracket.",
    ),
}

SUBTYPE_CONCEPTS: Mapping[str, tuple[str, ...]] = {
    "aggregation misuse": ("aggregation",),
    "ambiguous reference": ("joins",),
    "data type mismatch": ("where-clause",),
    "incomplete query": ("select-basic",),
    "incorrect distinct usage": ("select-basic",),
    "incorrect group by usage": ("aggregation",),
    "incorrect having clause": ("aggregation",),
    "incorrect join usage": ("joins",),
    "incorrect order by usage": ("order-by",),
    "incorrect select usage": ("select-basic",),
    "incorrect wildcard usage": ("select-basic",),
    "inefficient query": ("select-basic",),
    "missing commas": ("select-basic",),
    "missing quotes": ("select-basic",),
    "missing semicolons": ("select-basic",),
    "misspelling": ("where-clause",),
    "non-standard operators": ("where-clause",),
    "operator misuse": ("where-clause",),
    "undefined column": ("select-basic",),
    "undefined function": ("aggregation",),
    "undefined table": ("joins",),
    "unmatched brackets": ("where-clause",),
    "wrong positioning": ("order-by",),
}

_SYNTHETIC_ROW = ContentRow(
    row_id=SYNTHETIC_FALLBACK_ROW_ID,
    error_type="construction",
    error_subtype=DEFAULT_SUBTYPE_LABEL,
    emotion="neutral",
    feedback_target="Complete the query structure before execution.",
    intended_learning_outcome="Build valid SQL statements incrementally.",
)

_QUOTED_IDENTIFIER_PATTERNS = (re.compile(r"'[\w\s._]+'"), re.compile(r'"[\w\s._]+"'))


def _normalize_spacing(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def scrub_identifiers(text: str) -> str:
    """Replace quoted schema identifiers with a neutral phrase."""
    for pattern in _QUOTED_IDENTIFIER_PATTERNS:
        text = pattern.sub("the referenced item", text)
    return _normalize_spacing(text)


def _append_support_sentence(base: str, addon: str) -> str:
    cleaned = _normalize_spacing(addon)
    if not cleaned:
        return base
    punctuated = cleaned if cleaned[-1] in ".!?" else f"{cleaned}."
    return f"{base} {punctuated}"


def clamp_level(level: int) -> int:
    return max(1, min(3, int(level)))


def compose_seed(learner_id: str, problem_id: str, subtype: str, level: int) -> str:
    learner_key = learner_id.strip() or "anonymous-learner"
    problem_key = problem_id.strip() or "unknown-problem"
    return f"{learner_key}|{problem_key}|{subtype}|L{level}"


class ContentSet:
    """
    Read-only content table indexed by canonical subtype.

    Row order inside a subtype follows load order, so selection is only
    reproducible against an unchanged table.
    """

    def __init__(self, rows: Iterable[ContentRow], *, policy_version: str = CONTENT_POLICY_VERSION) -> None:
        self.policy_version = policy_version
        self._rows: tuple[ContentRow, ...] = tuple(rows)
        index: dict[str, list[ContentRow]] = {}
        for row in self._rows:
            key = row.error_subtype.strip().lower()
            if not key:
                continue
            index.setdefault(key, []).append(row)
        self._index: dict[str, tuple[ContentRow, ...]] = {k: tuple(v) for k, v in index.items()}
        self.default_subtype = self._dataset_backed_default()

    def __len__(self) -> int:
        return len(self._rows)

    def _dataset_backed_default(self) -> str:
        if DEFAULT_SUBTYPE_LABEL in self._index:
            return DEFAULT_SUBTYPE_LABEL
        if self._index:
            return sorted(self._index)[0]
        return DEFAULT_SUBTYPE_LABEL

    @property
    def subtypes(self) -> frozenset[str]:
        return frozenset(self._index)

    def known_subtypes(self) -> list[str]:
        """Subtypes that have both content rows and a hint ladder."""
        return sorted(s for s in LADDER_GUIDANCE if s in self._index)

    def canonicalize(self, subtype: str | None) -> str:
        raw = (subtype or "").strip().lower()
        if not raw:
            return self.default_subtype
        aliased = SUBTYPE_ALIASES.get(raw, raw)
        if aliased in self._index:
            return aliased
        return self.default_subtype

    def rows_for(self, subtype: str | None) -> tuple[ContentRow, ...]:
        return self._index.get(self.canonicalize(subtype), ())

    def concept_ids_for(self, subtype: str | None) -> tuple[str, ...]:
        if not subtype:
            return ()
        return SUBTYPE_CONCEPTS.get(self.canonicalize(subtype), ("select-basic",))

    def _fallback_row(self) -> ContentRow:
        default_rows = self._index.get(self.default_subtype)
        if default_rows:
            return default_rows[0]
        if self._rows:
            first = self._rows[0]
            return first.model_copy(
                update={
                    "error_subtype": self.canonicalize(first.error_subtype),
                    "row_id": first.row_id.strip() or SYNTHETIC_FALLBACK_ROW_ID,
                }
            )
        return _SYNTHETIC_ROW

    def pick_row(self, canonical_subtype: str, seed: str) -> ContentRow:
        rows = self._index.get(canonical_subtype) or (self._fallback_row(),)
        row = rows[rolling_hash(seed) % len(rows)]
        if not row.row_id.strip():
            row = row.model_copy(update={"row_id": SYNTHETIC_FALLBACK_ROW_ID})
        return row

    def hint_text(self, subtype: str, level: int, row: ContentRow | None = None) -> str:
        canonical = self.canonicalize(subtype)
        ladder = LADDER_GUIDANCE.get(canonical) or LADDER_GUIDANCE[DEFAULT_SUBTYPE_LABEL]
        clamped = clamp_level(level)
        if clamped == 1:
            return ladder[0]
        if clamped == 2:
            outcome = scrub_identifiers(row.intended_learning_outcome if row else "")
            return _append_support_sentence(ladder[1], outcome)
        feedback = scrub_identifiers(row.feedback_target if row else "")
        return _append_support_sentence(ladder[2], feedback)

    def select_content(
        self,
        requested_subtype: str | None,
        ladder_level: int,
        seed: str,
        *,
        override: SubtypeOverride = AUTO,
    ) -> HintSelection:
        effective = override.subtype if isinstance(override, OverrideSubtype) else requested_subtype
        canonical = self.canonicalize(effective)
        row = self.pick_row(canonical, seed)
        subtype_used = self.canonicalize(row.error_subtype or canonical)
        level = clamp_level(ladder_level)
        raw = (effective or "").strip().lower()
        fallback_used = SUBTYPE_ALIASES.get(raw, raw) != subtype_used

        selection = HintSelection(
            subtype=subtype_used,
            requested_subtype=effective,
            row_id=row.row_id,
            hint_level=level,
            requested_level=int(ladder_level),
            hint_text=self.hint_text(subtype_used, level, row),
            policy_version=self.policy_version,
            should_escalate=int(ladder_level) > 3,
            used_fallback_subtype=fallback_used,
        )
        if fallback_used:
            logger.debug("subtype %r resolved to fallback %r", effective, subtype_used)
        logger.debug(
            "selected row %s for %s at level %d (requested %d)",
            selection.row_id,
            selection.subtype,
            selection.hint_level,
            selection.requested_level,
        )
        return selection


def default_content_set() -> ContentSet:
    """Content set named by ``GUIDANCE_CONTENT_CSV``, else the bundled sample."""
    from guidance_policy.adapters.content_loader import load_configured_content_set
    from guidance_policy.settings import get_settings

    return load_configured_content_set(get_settings().content_csv)


def canonicalize(subtype: str | None) -> str:
    return default_content_set().canonicalize(subtype)


def select_content(
    requested_subtype: str | None,
    ladder_level: int,
    seed: str,
    *,
    override: SubtypeOverride = AUTO,
) -> HintSelection:
    return default_content_set().select_content(requested_subtype, ladder_level, seed, override=override)


# ------------------------------------------------------------------------------
# SQL error classification
# ------------------------------------------------------------------------------

_CLAUSE_STARTS = ("from ", "where ", "group by ", "order by ", "join ")
_TRAILING_CLAUSE = re.compile(r"(\bselect\b|\bfrom\b|\bwhere\b|\bgroup by\b|\border by\b|\bjoin\b)\s*$")

_ERROR_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"no such column|unknown column|has no column named|column not found|does not exist.*column|"
            r"invalid column|referenced column"
        ),
        "undefined column",
    ),
    (
        re.compile(
            r"no such table|unknown table|no such relation|table not found|does not exist.*table|"
            r"invalid table|referenced table"
        ),
        "undefined table",
    ),
    (
        re.compile(r"no such function|unknown function|undefined function|function not found|does not exist.*function"),
        "undefined function",
    ),
    (
        re.compile(r"ambiguous column|ambiguous table|ambiguous reference|is ambiguous|ambiguous identifier"),
        "ambiguous reference",
    ),
)

_LATE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"datatype mismatch|type mismatch|cannot convert|incompatible types|invalid.*type"), "data type mismatch"),
    (
        re.compile(r"constraint failed|unique constraint|foreign key constraint|check constraint|not null constraint"),
        "constraint violation",
    ),
    (re.compile(r"division by zero|divide by zero|arithmetic error|numeric overflow"), "operator misuse"),
    (re.compile(r"like pattern|escape sequence|invalid escape"), "operator misuse"),
    (re.compile(r"index.*already exists|index.*not found|no such index"), "misspelling"),
    (re.compile(r"no such view|view.*not found|invalid view"), "undefined table"),
    (re.compile(r'near\s*"[^"]*"\s*: syntax error|missing comma|expected comma'), "missing commas"),
)

_INCOMPLETE = re.compile(r"incomplete input|unterminated|unexpected end|unexpected eof|missing keyword|incomplete sql")
_SYNTAX = re.compile(r"near .*syntax error|syntax error|unexpected token|wrong order")


def _likely_wrong_positioning(query: str) -> bool:
    compact = query.strip().lower()
    return bool(compact) and compact.startswith(_CLAUSE_STARTS)


def _likely_incomplete(query: str) -> bool:
    compact = query.strip().lower()
    return bool(compact) and _TRAILING_CLAUSE.search(compact) is not None


def classify_sql_error(error_message: str, query: str = "", *, content: ContentSet | None = None) -> str:
    """
    Map a raw SQL-engine error message (SQLite wording) to a canonical subtype.
    Unmatched messages fall through to the content set's default subtype.
    """
    if content is None:
        content = default_content_set()
    error = error_message.lower()
    for pattern, subtype in _ERROR_RULES:
        if pattern.search(error):
            return content.canonicalize(subtype)
    if _INCOMPLETE.search(error) or _likely_incomplete(query):
        return content.canonicalize("incomplete query")
    if _SYNTAX.search(error) and _likely_wrong_positioning(query):
        return content.canonicalize("wrong positioning")
    for pattern, subtype in _LATE_RULES:
        if pattern.search(error):
            return content.canonicalize(subtype)
    return content.canonicalize(None)
