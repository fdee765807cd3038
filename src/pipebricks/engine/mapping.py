"""
Field mapping and automapping.

``apply_field_mappings`` renames record fields according to the configured
mappings. ``automap`` proposes mappings between a source and a destination
field list by name similarity:

* names are normalized (lower-cased, non-alphanumerics removed);
* identical normalized names score 1.0, anything else
  ``1 - levenshtein / max(len)`` on the normalized names;
* a destination is mapped only when its best remaining candidate reaches the
  threshold and beats the runner-up by the margin;
* pairs are assigned greedily by score, so a source field is used at most once;
  equal scores go to the alphabetically first names, so the result does not
  depend on the order the fields are listed in.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import Levenshtein

from pipebricks.core.contracts import Record
from pipebricks.core.exceptions import ValidationError
from pipebricks.models.pipeline import FieldMap

DEFAULT_THRESHOLD = 0.6
DEFAULT_MARGIN = 0.05

_NON_ALNUM = re.compile(r"[^0-9a-z]")


def normalize_field_name(name: str) -> str:
    return _NON_ALNUM.sub("", name.lower())


def similarity(left: str, right: str) -> float:
    a, b = normalize_field_name(left), normalize_field_name(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / max(len(a), len(b))


def _dedupe(names: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for n in names:
        if n and n not in seen:
            seen[n] = None
    return list(seen)


def _name_key(name: str) -> Tuple[str, str]:
    # Case-insensitive order first, exact spelling second
    return name.casefold(), name


def check_field_mappings(mappings: Sequence[FieldMap]) -> None:
    seen = set()
    for m in mappings:
        if not m.source_field.strip() or not m.destination_field.strip():
            raise ValidationError("field mappings require non-empty source and destination names")
        if m.destination_field in seen:
            raise ValidationError(f"duplicate destination field {m.destination_field!r}")
        seen.add(m.destination_field)


def automap(
    source_fields: Sequence[str],
    destination_fields: Sequence[str],
    existing: Optional[Sequence[FieldMap]] = None,
    *,
    threshold: float = DEFAULT_THRESHOLD,
    margin: float = DEFAULT_MARGIN,
) -> List[FieldMap]:
    """Existing mappings followed by new automapped ones, in destination order."""
    existing = list(existing or [])
    check_field_mappings(existing)

    used_sources = {m.source_field for m in existing}
    used_destinations = {m.destination_field for m in existing}
    sources = [s for s in _dedupe(source_fields) if s not in used_sources]
    destinations = [d for d in _dedupe(destination_fields) if d not in used_destinations]

    scores: Dict[Tuple[str, str], float] = {
        (d, s): similarity(s, d) for d in destinations for s in sources
    }

    accepted: Dict[str, FieldMap] = {}
    open_dest = list(destinations)
    open_src = list(sources)
    while open_dest and open_src:
        candidates = sorted(
            ((scores[(d, s)], d, s) for d in open_dest for s in open_src),
            key=lambda c: (-c[0], _name_key(c[1]), _name_key(c[2])),
        )
        best_score, dest, src = candidates[0]
        if best_score < threshold:
            break

        others = [scores[(dest, s)] for s in open_src if s != src]
        runner_up = max(others) if others else 0.0
        open_dest.remove(dest)
        if best_score - runner_up < margin:
            # Ambiguous; leave this destination for a human
            continue

        open_src.remove(src)
        accepted[dest] = FieldMap(
            source_field=src,
            destination_field=dest,
            automap_score=round(best_score, 4),
            is_automapped=True,
        )

    return existing + [accepted[d] for d in destinations if d in accepted]


def apply_field_mappings(records: Iterable[Record], mappings: Sequence[FieldMap]) -> List[Record]:
    """Rename fields per mapping, dropping unmapped ones; no mappings means pass-through.

    A mapped source field missing from a record is left out rather than set to None.
    """
    if not mappings:
        return [dict(r) for r in records]
    out: List[Record] = []
    for record in records:
        mapped: Record = {}
        for m in mappings:
            if m.source_field in record:
                mapped[m.destination_field] = record[m.source_field]
        out.append(mapped)
    return out
