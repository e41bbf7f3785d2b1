import logging
import re
from typing import Callable, List, Optional, Pattern, Tuple

from pydantic import BaseModel

from config import settings

logger = logging.getLogger(__name__)


class ExtractedFields(BaseModel):
    """Identity fields read from a document. Every field may be empty."""

    name: str = ""
    dob: str = ""
    document_number: str = ""
    raw_text: str = ""

    def is_empty(self) -> bool:
        return not (self.name or self.dob or self.document_number)


class FieldReport(BaseModel):
    """Extraction result plus the advisory shown before the user confirms it."""

    fields: ExtractedFields
    confidence: float = 0.0
    low_confidence: bool = False
    advisory: Optional[str] = None
    engine: str = ""


MRZ_SEPARATOR = "<<"

# Boilerplate that appears in all-caps on most identity documents
EXCLUDED_NAME_WORDS = (
    "REPUBLIC", "KINGDOM", "STATES", "NATIONAL", "IDENTITY",
    "DRIVING", "LICENSE", "LICENCE", "DOCUMENT", "PASSPORT",
    "CARD", "EXPIRY", "ISSUED", "VALIDITY", "NATIONALITY",
)

EXCLUDED_NUMBER_WORDS = (
    "REPUBLIC", "KINGDOM", "STATES", "NATIONAL", "IDENTITY",
    "DRIVING", "LICENSE", "LICENCE", "PASSPORT",
)

NAME_LABEL_PATTERNS = [
    re.compile(r"^(?:surname|last\s*name|nom(?!\s*complet))[:\s]+(.+)", re.IGNORECASE),
    re.compile(r"^(?:given\s*names?|first\s*name|pr[eé]nom)[:\s]+(.+)", re.IGNORECASE),
    re.compile(r"^(?:full\s*name|nom\s*complet|name)[:\s]+(.+)", re.IGNORECASE),
]

CAPS_NAME_LINE = re.compile(r"^[A-Z]{2,20}(?:\s[A-Z]{2,20}){1,3}$")

DATE_NUMERIC = r"\d{2}[/\-.]\d{2}[/\-.]\d{4}"

DOB_PATTERNS = [
    re.compile(r"\bDOB[:\s]+(" + DATE_NUMERIC + r")\b", re.IGNORECASE),
    re.compile(
        r"\b(?:date\s*of\s*birth|birth\s*date|n[eé]\s*le?)[:\s]+(" + DATE_NUMERIC + r")\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(?:date\s*of\s*birth|birth\s*date)[:\s]+(\d{1,2}\s+\w+\s+\d{4})\b", re.IGNORECASE),
    re.compile(r"\b(" + DATE_NUMERIC + r")\b"),
    re.compile(r"\b(\d{4}[/\-.]\d{2}[/\-.]\d{2})\b"),
    re.compile(r"\b(\d{2}\s+(?:JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)\s+\d{4})\b", re.IGNORECASE),
]

DOCUMENT_NUMBER_PATTERNS = [
    re.compile(
        r"\b(?:document\s*no?|id\s*no?|passport\s*no?|license\s*no?|card\s*no?)[.:\s]+([A-Z0-9]{6,15})",
        re.IGNORECASE,
    ),
    re.compile(r"\b([A-Z]{2}\d{6,8})\b"),
    re.compile(r"\b([A-Z0-9]{8,14})\b"),
]

# TD3 passports open the name line with "P<" + issuing state
TD3_PREFIX = re.compile(r"^P<[A-Z<]{3}")


def sanitize_name(name: str) -> str:
    """Keep letters, spaces, hyphens and apostrophes; collapse whitespace."""
    kept = "".join(ch for ch in name if ch.isalpha() or ch in " \t-'")
    return " ".join(kept.split())


def normalize_document_number(number: str) -> str:
    """Uppercase alphanumerics only."""
    return re.sub(r"[^A-Z0-9]", "", (number or "").upper())


class FieldExtractor:
    """
    Heuristic extraction of name, date of birth and document number
    from raw OCR text.

    Each field is resolved by an ordered list of strategies and the
    first one that produces a value wins.
    """

    def __init__(self, raw_text_limit: int = settings.RAW_TEXT_LIMIT):
        self.raw_text_limit = raw_text_limit
        self.name_strategies: List[Callable[[List[str]], str]] = [
            self.name_from_mrz,
            self.name_from_labels,
            self.name_from_caps_line,
        ]
        self.dob_rules: List[Tuple[Pattern, Callable]] = [
            (pattern, self._matched_token) for pattern in DOB_PATTERNS
        ]
        self.number_rules: List[Tuple[Pattern, Callable]] = [
            (pattern, self._document_number_candidate) for pattern in DOCUMENT_NUMBER_PATTERNS
        ]

    @staticmethod
    def split_lines(text: str) -> List[str]:
        lines = (line.strip() for line in text.split("\n"))
        return [line for line in lines if len(line) > 1]

    # ------------------------
    # Name
    # ------------------------
    def name_from_mrz(self, lines: List[str]) -> str:
        """Parse SURNAME<<GIVEN<MIDDLE from a machine-readable zone line"""
        candidates = [line for line in lines if MRZ_SEPARATOR in line]
        if not candidates:
            return ""

        # TD1 cards carry digits on their number lines; the name line has none
        without_digits = [line for line in candidates if not any(ch.isdigit() for ch in line)]
        line = (without_digits or candidates)[0]

        name_part = re.sub(r"[^A-Z<]", "", line)
        if TD3_PREFIX.match(name_part):
            name_part = name_part[5:]

        separator = name_part.find(MRZ_SEPARATOR)
        if separator <= 0:
            return ""

        surname = name_part[:separator].replace("<", " ")
        given = " ".join(part for part in name_part[separator + 2:].split("<") if part)
        return f"{surname} {given}".strip()

    def name_from_labels(self, lines: List[str]) -> str:
        for line in lines:
            for pattern in NAME_LABEL_PATTERNS:
                match = pattern.match(line)
                if match and len(match.group(1).strip()) > 2:
                    return match.group(1).strip()
        return ""

    def name_from_caps_line(self, lines: List[str]) -> str:
        for line in lines:
            if not CAPS_NAME_LINE.match(line) or "<" in line:
                continue
            if any(word in line for word in EXCLUDED_NAME_WORDS):
                continue
            return line
        return ""

    def extract_name(self, lines: List[str]) -> str:
        for strategy in self.name_strategies:
            name = sanitize_name(strategy(lines))
            if name:
                return name
        return ""

    # ------------------------
    # Date of birth
    # ------------------------
    @staticmethod
    def _matched_token(match: "re.Match") -> Optional[str]:
        return match.group(1).strip()

    def extract_dob(self, text: str) -> str:
        for pattern, handler in self.dob_rules:
            match = pattern.search(text)
            if match:
                value = handler(match)
                if value:
                    return value
        return ""

    # ------------------------
    # Document number
    # ------------------------
    @staticmethod
    def _document_number_candidate(match: "re.Match") -> Optional[str]:
        candidate = normalize_document_number(match.group(1))
        if any(word in candidate for word in EXCLUDED_NUMBER_WORDS):
            return None
        if len(candidate) < 6:
            return None
        return candidate

    def extract_document_number(self, text: str) -> str:
        for pattern, handler in self.number_rules:
            match = pattern.search(text)
            if not match:
                continue
            candidate = handler(match)
            if candidate:
                return candidate
        return ""

    def extract(self, text: str, document_type: Optional[str] = None) -> ExtractedFields:
        """
        Extract identity fields from recognized text

        Args:
            text: Raw OCR output, possibly multi-line
            document_type: Document type hint (id_card, driver_license, passport)

        Returns:
            ExtractedFields; fields that could not be found are empty strings
        """
        text = text or ""
        lines = self.split_lines(text)

        fields = ExtractedFields(
            name=self.extract_name(lines),
            dob=self.extract_dob(text),
            document_number=self.extract_document_number(text),
            raw_text=text[:self.raw_text_limit],
        )
        logger.debug(
            "Extracted fields for %s: name=%s dob=%s number=%s",
            document_type or "unknown",
            bool(fields.name), bool(fields.dob), bool(fields.document_number),
        )
        return fields


_default_extractor = FieldExtractor()


def extract_fields(text: str, document_type: Optional[str] = None) -> ExtractedFields:
    return _default_extractor.extract(text, document_type)


def build_report(
    fields: Optional[ExtractedFields],
    confidence: float,
    ok: bool = True,
    engine: str = "",
    min_confidence: float = settings.OCR_MIN_CONFIDENCE,
) -> FieldReport:
    """
    Apply the confidence policy to an extraction result.

    The field set is always returned; low-confidence results only carry an
    advisory steering the user towards manual editing.
    """
    if not ok or fields is None:
        return FieldReport(
            fields=fields or ExtractedFields(),
            confidence=0.0,
            low_confidence=True,
            advisory="OCR failed. Please fill in the fields manually.",
            engine=engine,
        )

    advisory = None
    if confidence < min_confidence:
        advisory = "Image quality is low. Please review and correct the fields below."
    elif not fields.name:
        advisory = "Name could not be detected automatically. Please fill it in manually."

    return FieldReport(
        fields=fields,
        confidence=round(confidence, 2),
        low_confidence=advisory is not None,
        advisory=advisory,
        engine=engine,
    )
