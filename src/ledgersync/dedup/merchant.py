"""Merchant name normalization for rule patterns and duplicate matching.

Two normalizers live here:

- ``extract_pattern`` produces the short canonical token stored on
  categorization rules. It is deliberately conservative so learned rules stay
  readable ("STARBUCKS", "GUSTO", "NETFLIX.COM").
- ``extract_merchant_name`` is the aggressive variant used by Tier-1 scoring.
  It also strips wallet/processor prefixes, legal suffixes, locations and
  store numbers so that "AplPay CHIPOTLE 1249GAINESVILLE VA" and
  "Chipotle" compare equal.

Both are pure functions of their input.
"""

from __future__ import annotations

import re

# Processor / channel prefixes stripped from rule patterns, in order.
_PATTERN_PREFIXES = [
    "PURCHASE ",
    "POS ",
    "DEBIT ",
    "CREDIT ",
    "CHECKCARD ",
    "VISA ",
    "MASTERCARD ",
    "AMEX ",
    "ACH ",
    "PAYMENT TO ",
    "PAYMENT ",
    "TRANSFER ",
    "RECURRING ",
    "AUTOPAY ",
    "SQ *",
    "TST* ",
    "PP*",
    "PAYPAL *",
]

# Transfer-mechanism markers; everything from the marker onward is dropped.
_PATTERN_SUFFIX_RE = re.compile(
    r"\s(?:DIRECT DEPOSIT|DIRECT DEP|DIR DEP|PAYROLL|PPD|CCD|WEB|TEL|ACH)(?=[\s:]|$)"
)

_DATE_FRAGMENT_RE = re.compile(r"\b\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?\b")
_REF_TAIL_RE = re.compile(r"\s+(?:REF\b|ID:).*$")

_US_STATES = (
    "AL AK AZ AR CA CO CT DE FL GA HI ID IL IN IA KS KY LA ME MD MA MI MN MS "
    "MO MT NE NV NH NJ NM NY NC ND OH OK OR PA RI SC SD TN TX UT VT VA WA WV "
    "WI WY DC"
).split()

_TRAILING_NOISE_RES = [
    re.compile(r"\s+#\d+$"),
    re.compile(r"\s+\d{4,}$"),
    # Alphanumeric reference codes: 6+ chars with at least one digit.
    re.compile(r"\s+(?=[A-Z0-9]*\d)[A-Z0-9]{6,}$"),
    re.compile(r"\s+[A-Z]{2}\s*\d{5}(?:-\d{4})?$"),
    re.compile(r"\s+(?:" + "|".join(_US_STATES) + r")$"),
]
_TRAILING_PUNCT_RE = re.compile(r"[*#\-_/.,:;]+$")
_WHITESPACE_RE = re.compile(r"\s+")

MAX_PATTERN_WORDS = 3


def _collapse(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def extract_pattern(description: str) -> str:
    """Normalize a raw transaction description into a canonical merchant token.

    Returns an empty string when nothing meaningful remains; callers treat
    that as "no rule applicable".

    Examples:
        "POS STARBUCKS 4821"             -> "STARBUCKS"
        "GUSTO PAYROLL PPD ID: 99812"    -> "GUSTO"
        "NETFLIX.COM 03/14 #1182"        -> "NETFLIX.COM"
    """
    if not description:
        return ""

    pattern = description.upper().strip()

    for prefix in _PATTERN_PREFIXES:
        if pattern.startswith(prefix):
            pattern = pattern[len(prefix) :].lstrip()

    for match in _PATTERN_SUFFIX_RE.finditer(pattern):
        if match.start() >= 3:
            pattern = pattern[: match.start()]
            break

    pattern = _DATE_FRAGMENT_RE.sub(" ", pattern)
    pattern = _REF_TAIL_RE.sub("", pattern)
    pattern = _collapse(pattern)

    previous = None
    while previous != pattern:
        previous = pattern
        for regex in _TRAILING_NOISE_RES:
            pattern = regex.sub("", pattern).strip()
        pattern = _TRAILING_PUNCT_RE.sub("", pattern).strip()

    words = pattern.split()
    if len(words) > MAX_PATTERN_WORDS:
        pattern = " ".join(words[:MAX_PATTERN_WORDS])

    if not any(ch.isalpha() for ch in pattern):
        return ""
    return pattern


# Wallets, processors and channel markers seen at the start of descriptions.
_MERCHANT_PREFIXES = [
    "APLPAY",
    "APPLE PAY",
    "APL*PAY",
    "APPLEPAY",
    "SQ *",
    "SQ*",
    "SQUARE *",
    "GOSQ.COM",
    "TST*",
    "TST *",
    "TOAST*",
    "SP*",
    "STRIPE*",
    "SHOPIFY*",
    "PAYPAL *",
    "PAYPAL*",
    "PP*",
    "VENMO *",
    "VENMO*",
    "POS PURCHASE",
    "POS DEBIT",
    "PURCHASE",
    "POS",
    "DEBIT CARD",
    "DEBIT",
    "CHECKCARD",
    "CHECK CARD",
    "ACH DEBIT",
    "ACH CREDIT",
    "ACH",
    "ELECTRONIC",
    "RECURRING",
    "AUTOPAY PAYMENT",
    "AUTOPAY",
    "AUTO PAY",
    "BILL PAY",
    "MOBILE PAYMENT",
    "ONLINE",
    "CONTACTLESS",
    "AMZN*",
    "AMZ*",
    "GOOGLE *",
    "GOOGLE*",
    "DD *",
    "DOORDASH*",
    "WWW.",
    "HTTPS://",
    "HTTP://",
]

_MERCHANT_SUFFIXES = [
    "- THANK YOU",
    "THANK YOU",
    "PAYMENT RECEIVED",
    "APPROVED",
    "PAYROLL",
    "DIRECT DEPOSIT",
    "DIRECT DEP",
    "DIR DEP",
    "PPD",
    "WEB",
    "CCD",
    "VISA",
    "MASTERCARD",
    "AMEX",
    "INC.",
    "INC",
    "LLC.",
    "LLC",
    "CORP.",
    "CORP",
    "LTD.",
    "LTD",
]

_CITY_STATE_RE = re.compile(
    r"\s+(?:[A-Z]+\s+)?(?:" + "|".join(_US_STATES) + r")\s*$"
)
_MERCHANT_CLEANUP_RES = [
    re.compile(r"\s+\d{3,}.*$"),
    re.compile(r"\s+#?\d+\s*$"),
    re.compile(r"\s+\d{5}(?:-\d{4})?\s*$"),
    re.compile(r"\s+\(\d{3}\)\s*\d{3}-\d{4}\s*$"),
    re.compile(r"\s+\d{3}-\d{3}-\d{4}\s*$"),
    re.compile(r"\s+ID:\s*\S+\s*$"),
    re.compile(r"\s+\S+\.(?:COM|NET|ORG|IO|CO)\S*\s*$"),
    re.compile(r"\s+-\d+\s*$"),
]
_MERCHANT_SEPARATORS_RE = re.compile(r"[*#/]+")
_STOP_WORDS = frozenset(
    {"the", "a", "an", "of", "and", "or", "in", "at", "to", "for", "on", "by"}
)

MAX_MERCHANT_WORDS = 4


def _strip_prefix(clean: str, prefix: str) -> str:
    if not clean.startswith(prefix):
        return clean
    rest = clean[len(prefix) :]
    # Word-like prefixes must end on a word boundary ("POS" vs "POSTMATES").
    if prefix[-1].isalnum() and rest and rest[0].isalnum():
        return clean
    return rest.strip()


def extract_merchant_name(description: str) -> str:
    """Extract the core merchant name from a messy bank description.

    Examples:
        "AplPay CHIPOTLE 1249GAINESVILLE VA" -> "CHIPOTLE"
        "RAISING CANES 0724 MANASSAS VA"      -> "RAISING CANES"
        "Chipotle Mexican Grill"              -> "CHIPOTLE MEXICAN GRILL"
    """
    if not description:
        return ""

    clean = description.upper().strip()

    for prefix in _MERCHANT_PREFIXES:
        clean = _strip_prefix(clean, prefix)

    for suffix in _MERCHANT_SUFFIXES:
        if clean.endswith(" " + suffix) or clean == suffix:
            clean = clean[: -len(suffix)].strip()

    clean = _CITY_STATE_RE.sub("", clean)
    for regex in _MERCHANT_CLEANUP_RES:
        clean = regex.sub("", clean)

    clean = _MERCHANT_SEPARATORS_RE.sub(" ", clean)
    clean = _collapse(clean)

    words = clean.split(" ")
    if len(words) > MAX_MERCHANT_WORDS:
        clean = " ".join(words[:MAX_MERCHANT_WORDS])

    return _TRAILING_PUNCT_RE.sub("", clean).strip()


def merchant_tokens(description: str) -> list[str]:
    """Significant lowercase tokens of the extracted merchant name."""
    normalized = extract_merchant_name(description).lower()
    tokens = []
    for word in normalized.split():
        if word in _STOP_WORDS:
            continue
        cleaned = re.sub(r"[^a-z0-9]", "", word)
        if len(cleaned) >= 3:
            tokens.append(cleaned)
    return tokens


def has_significant_token_overlap(first: str, second: str) -> bool:
    """Whether two descriptions likely name the same merchant by token overlap."""
    tokens1 = merchant_tokens(first)
    tokens2 = merchant_tokens(second)
    if not tokens1 or not tokens2:
        return False

    overlap = len(set(tokens1) & set(tokens2))
    for t1 in tokens1:
        for t2 in tokens2:
            if len(t1) >= 4 and len(t2) >= 4 and (t1 in t2 or t2 in t1):
                overlap += 1

    min_tokens = min(len(tokens1), len(tokens2))
    return overlap >= 1 and (overlap >= min_tokens * 0.5 or overlap >= 2)
