"""Heuristic borrower-field extraction from a loan document's plain text.

Each picker is independent and returns an empty value when nothing
plausible is found; the result is advisory and never feeds the decision.
"""

from __future__ import annotations

import re
from typing import Any

SUMMARY_MAX_CHARS = 1800
LOAN_AMOUNT_CEILING = 10_000_000
INCOME_CEILING = 1_000_000


def extract_fields(text: str) -> dict[str, Any]:
    """Extract applicant fields, a readable summary, conditions and red flags."""
    borrower = pick_borrower_name(text)
    return {
        "extracted": {
            "borrower": borrower,
            "fullName": borrower,
            "email": pick_email(text),
            "loanAmount": pick_largest_amount(text, ceiling=LOAN_AMOUNT_CEILING),
            "dob": pick_dob(text),
            "ssnLast4": pick_ssn_last4(text),
            "income": pick_largest_amount(text, ceiling=INCOME_CEILING),
            "creditScore": pick_credit_score(text),
            "address": pick_address(text),
            "employerAddress": pick_employer_address(text),
        },
        "summary": build_summary(text),
        "conditions": build_conditions(text),
        "redFlags": build_red_flags(text),
    }


def _compact(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_NAME_LABEL_RE = re.compile(r"^(?:full\s*name|borrower|applicant|name)[:\s-]*", re.IGNORECASE)
_TITLE_CASE_NAME_RE = re.compile(r"^[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+$")
_UPPER_CASE_NAME_RE = re.compile(r"^[A-Z]{2,}(?:\s+[A-Z]{2,})+$")
_DOB_RE = re.compile(r"\b(0?[1-9]|1[0-2])/(0?[1-9]|[12]\d|3[01])/(19|20)\d{2}\b")
_SSN_DASHED_RE = re.compile(r"\b\d{3}-\d{2}-(\d{4})\b")
_SSN_PLAIN_RE = re.compile(r"\b\d{9}\b")


def pick_email(text: str) -> str:
    m = _EMAIL_RE.search(text)
    return m.group() if m else ""


def _strip_name_label(value: str) -> str:
    return _compact(_NAME_LABEL_RE.sub("", _compact(value)))


def pick_borrower_name(text: str) -> str:
    for raw_line in text.splitlines():
        line = _compact(raw_line)
        lower = line.lower()
        if len(line) < 3 or len(line) > 80 or "@" in line or re.search(r"\d", line):
            continue
        if lower.startswith(("full name", "borrower", "applicant", "name")):
            _, _, after = line.partition(":")
            candidate = _strip_name_label(after or line)
        elif _TITLE_CASE_NAME_RE.match(line) or _UPPER_CASE_NAME_RE.match(line):
            candidate = _strip_name_label(line)
        else:
            continue
        if len(candidate.split()) >= 2:
            return candidate
    return ""


def pick_dob(text: str) -> str:
    m = _DOB_RE.search(text)
    return m.group() if m else ""


def pick_ssn_last4(text: str) -> str:
    m = _SSN_DASHED_RE.search(text)
    if m:
        return m.group(1)
    m = _SSN_PLAIN_RE.search(text)
    return m.group()[-4:] if m else ""


# ---------------------------------------------------------------------------
# Money and credit
# ---------------------------------------------------------------------------

_AMOUNT_RE = re.compile(r"\$?\s*\d{1,3}(?:,\d{3})+(?:\.\d{2})?")
_CREDIT_SCORE_RE = re.compile(r"credit\s*score[^0-9]{0,20}(\d{3})", re.IGNORECASE)
_THREE_DIGITS_RE = re.compile(r"\b\d{3}\b")


def pick_largest_amount(text: str, *, ceiling: float) -> float | None:
    """Largest comma-grouped amount not above `ceiling`, or None."""
    best = 0.0
    for m in _AMOUNT_RE.finditer(text):
        cleaned = re.sub(r"[^0-9.]", "", m.group())
        try:
            value = float(cleaned)
        except ValueError:
            continue
        if best < value <= ceiling:
            best = value
    return best if best > 0 else None


def pick_credit_score(text: str) -> int | None:
    m = _CREDIT_SCORE_RE.search(text)
    if m:
        return int(m.group(1))
    for m in _THREE_DIGITS_RE.finditer(text):
        value = int(m.group())
        if 300 <= value <= 850:
            return value
    return None


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

_ADDRESS_BODY = r"\d{1,6}\s+[A-Za-z0-9.\s]+,\s*[A-Za-z.\s]+,\s*[A-Z]{2}\s*\d{5}"
_ADDRESS_RE = re.compile(r"\b" + _ADDRESS_BODY + r"\b")
_EMPLOYER_ADDRESS_RE = re.compile(
    r"employer\s*address[^A-Za-z0-9]{0,20}(" + _ADDRESS_BODY + r")", re.IGNORECASE
)


def pick_address(text: str) -> str:
    m = _ADDRESS_RE.search(text)
    return _compact(m.group()) if m else ""


def pick_employer_address(text: str) -> str:
    m = _EMPLOYER_ADDRESS_RE.search(text)
    return _compact(m.group(1)) if m else ""


# ---------------------------------------------------------------------------
# Summary and keyword flags
# ---------------------------------------------------------------------------

_CONDITION_CHECKS: tuple[tuple[str, str, str], ...] = (
    ("Bankruptcy mention", "bankruptcy", "high"),
    ("Collections mention", "collections", "med"),
    ("Late payment mention", "late", "med"),
    ("Foreclosure mention", "foreclosure", "high"),
    ("Judgment mention", "judgment", "high"),
    ("Charge-off mention", "charge off", "med"),
)

_RED_FLAG_KEYWORDS = ("bankruptcy", "foreclosure", "judgment", "fraud", "charge off", "collections")


def build_summary(text: str, *, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    compact = _compact(text)
    if len(compact) <= max_chars:
        return compact
    return compact[:max_chars] + "…"


def build_conditions(text: str) -> list[dict[str, str]]:
    lower = text.lower()
    return [
        {"label": label, "severity": severity, "evidence": f'Found keyword: "{needle}"'}
        for label, needle, severity in _CONDITION_CHECKS
        if needle in lower
    ]


def build_red_flags(text: str) -> list[str]:
    lower = text.lower()
    return [keyword for keyword in _RED_FLAG_KEYWORDS if keyword in lower]
