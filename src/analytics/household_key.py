from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_ZIP_SENTINEL = "NOZIP"
UNKNOWN_NAME = "UNKNOWN"

_NAME_STRIP_PATTERN = re.compile(r"[^A-Z-]")
_HYPHEN_RUN_PATTERN = re.compile(r"-{2,}")
_ZIP_PATTERN = re.compile(r"^(\d{5})(?:-?\d{4})?$")


@dataclass(frozen=True)
class HouseholdKey:
    key: str
    first_name: str
    last_name: str
    zip_code: Optional[str]
    zip_malformed: bool = False
    name_malformed: bool = False

    @property
    def has_zip(self) -> bool:
        return self.zip_code is not None

    @property
    def is_malformed(self) -> bool:
        return self.zip_malformed or self.name_malformed


def normalize_name_part(value: Optional[str]) -> str:
    """Uppercase ASCII letters and hyphens only; ``Smith-Jones`` stays one token."""
    if not value:
        return ""
    folded = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    cleaned = _NAME_STRIP_PATTERN.sub("", folded.strip().upper())
    return _HYPHEN_RUN_PATTERN.sub("-", cleaned).strip("-")


def normalize_zip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    match = _ZIP_PATTERN.match(str(value).strip())
    if not match:
        return None
    return match.group(1)


def split_full_name(full_name: Optional[str]) -> Tuple[str, str]:
    """Split a combined name into (first, last).

    ``Last, First Middle`` keeps everything before the comma as the last name
    and the first token after it as the first name. Otherwise ``First Rest Of
    Name`` splits on the first whitespace.
    """
    if full_name and "," in full_name:
        last, _, rest = full_name.partition(",")
        given = rest.split()
        return (given[0] if given else ""), last.strip()
    parts = (full_name or "").split(None, 1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return "", parts[0]
    return parts[0], parts[1]


def build_household_key(
    first_name: Optional[str],
    last_name: Optional[str],
    zip_code: Optional[str],
    *,
    full_name: Optional[str] = None,
    zip_sentinel: str = DEFAULT_ZIP_SENTINEL,
) -> HouseholdKey:
    if full_name and not (first_name or last_name):
        first_name, last_name = split_full_name(full_name)

    last = normalize_name_part(last_name)
    first = normalize_name_part(first_name)
    name_malformed = not last
    last = last or UNKNOWN_NAME
    first = first or UNKNOWN_NAME

    raw_zip = str(zip_code).strip() if zip_code is not None else ""
    zip_value = normalize_zip(raw_zip) if raw_zip else None
    zip_malformed = bool(raw_zip) and zip_value is None

    return HouseholdKey(
        key=f"{last}_{first}_{zip_value or zip_sentinel}",
        first_name=first,
        last_name=last,
        zip_code=zip_value,
        zip_malformed=zip_malformed,
        name_malformed=name_malformed,
    )
