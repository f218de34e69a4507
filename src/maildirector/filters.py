"""Summary: Rule-based routing of email to directors.

Importance: Decides deterministically which directors a fetched message starts.
Alternatives: Use an LLM-based router for fuzzy matching.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from maildirector.errors import ValidationError
from maildirector.models import FILTER_FIELDS, EmailEnvelope, Filter


@dataclass(frozen=True)
class FilterMatch:
    """A director route produced by one matching filter."""

    director_id: str
    filter_id: str


@dataclass(frozen=True)
class FilterEvaluation:
    """Summary: Per-filter outcome used for diagnostics.

    Importance: Shows users why a filter did or did not fire.
    Alternatives: Log only the final list of routes.
    """

    filter_id: str
    director_id: str
    field: str
    matched: bool
    duplicate_allowed: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "filter_id": self.filter_id,
            "director_id": self.director_id,
            "field": self.field,
            "matched": self.matched,
            "duplicate_allowed": self.duplicate_allowed,
        }


def compile_filter_regex(pattern: str) -> re.Pattern[str]:
    """Summary: Compile a filter pattern, rejecting invalid syntax.

    Importance: Invalid patterns must never reach storage.
    Alternatives: Store raw strings and skip broken filters at match time.
    """

    if not isinstance(pattern, str) or not pattern:
        raise ValidationError("Filter regex must be a non-empty string", field="regex")
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValidationError(f"Invalid filter regex: {exc}", field="regex") from exc


def validate_filter(item: Filter) -> Filter:
    """Check field and pattern of a filter before it is stored."""

    if item.field not in FILTER_FIELDS:
        raise ValidationError(f"Unknown filter field: {item.field}", field="field")
    if not item.director_id:
        raise ValidationError("Filter requires a director_id", field="director_id")
    compile_filter_regex(item.regex)
    return item


def extract_field(envelope: EmailEnvelope, field: str) -> str:
    """Summary: Return the text a filter field is matched against.

    Importance: The body field spans plain text, HTML, and the snippet.
    Alternatives: Match body filters against the plain text only.
    """

    if field == "from":
        return envelope.sender
    if field == "body":
        return "\n".join([envelope.body_plain, envelope.body_html, envelope.snippet])
    if field in ("to", "cc", "bcc", "subject", "date"):
        return getattr(envelope, field)
    raise ValidationError(f"Unknown filter field: {field}", field="field")


def ordered(filters: list[Filter]) -> list[Filter]:
    """Return filters by their stored order, keeping list position for ties."""

    return sorted(filters, key=lambda item: item.order)


def evaluate_filters(envelope: EmailEnvelope, filters: list[Filter]) -> list[FilterEvaluation]:
    """Summary: Evaluate every filter against an envelope in order.

    Importance: Provides the raw match table that routing and diagnostics share.
    Alternatives: Stop at the first match per director.
    """

    evaluations: list[FilterEvaluation] = []
    for item in ordered(filters):
        value = extract_field(envelope, item.field)
        matched = re.search(item.regex, value) is not None
        evaluations.append(
            FilterEvaluation(
                filter_id=item.id,
                director_id=item.director_id,
                field=item.field,
                matched=matched,
                duplicate_allowed=item.duplicate_allowed,
            )
        )
    return evaluations


def select_routes(evaluations: list[FilterEvaluation]) -> list[FilterMatch]:
    """Summary: Turn evaluations into routes with duplicate suppression.

    Importance: A director fires once per message unless a filter opts into duplicates.
    Alternatives: Deduplicate directors after thread creation.
    """

    routes: list[FilterMatch] = []
    seen: set[str] = set()
    for evaluation in evaluations:
        if not evaluation.matched:
            continue
        if evaluation.director_id in seen and not evaluation.duplicate_allowed:
            continue
        seen.add(evaluation.director_id)
        routes.append(FilterMatch(director_id=evaluation.director_id, filter_id=evaluation.filter_id))
    return routes


def match_filters(envelope: EmailEnvelope, filters: list[Filter]) -> list[FilterMatch]:
    """Match an envelope against filters and return the ordered director routes."""

    return select_routes(evaluate_filters(envelope, filters))


def reorder_filters(filters: list[Filter], ordered_ids: list[str]) -> list[Filter]:
    """Summary: Reassign filter order from an explicit id sequence.

    Importance: Lets users change evaluation priority without editing each filter.
    Alternatives: Require the caller to send every filter with its new order.
    """

    by_id = {item.id: item for item in filters}
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError("Filter order contains duplicate ids", field="ids")
    unknown = [item_id for item_id in ordered_ids if item_id not in by_id]
    if unknown:
        raise ValidationError(f"Unknown filter ids: {', '.join(unknown)}", field="ids")
    remaining = [item for item in ordered(filters) if item.id not in set(ordered_ids)]
    sequence = [by_id[item_id] for item_id in ordered_ids] + remaining
    return [
        Filter(
            id=item.id,
            field=item.field,
            regex=item.regex,
            director_id=item.director_id,
            duplicate_allowed=item.duplicate_allowed,
            order=position,
        )
        for position, item in enumerate(sequence)
    ]
