#!/usr/bin/env python3
# ktp_ocr.py
# Desc   : OCR keyword gate for the KTP validator
#          - fuzzy NIK/NAMA/ALAMAT match over OCR text (OCR-confusion aware)
#          - bounded-wait wrapper around any recognizer(rgb) -> str
#          - default recognizer: tesseract via pytesseract

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------- Optional OCR ----------
try:
    import pytesseract
    _HAS_TESS = True
except Exception:
    _HAS_TESS = False

# =================== Tunables ===================
KEYWORDS               = ("NIK", "NAMA", "ALAMAT")
KEYWORD_THRESHOLD      = 0.78
OCR_TIMEOUT_S          = 12.0
OCR_SAMPLE_CHARS       = 120
TESS_CONFIG            = "--psm 6 --oem 3 -l ind+eng"

# common misreads: digit/glyph -> letter
OCR_CONFUSIONS = str.maketrans({"0": "O", "1": "I", "5": "S", "6": "G",
                                "8": "B", "4": "A", "|": "I"})
# =================================================

FOUND_KEYWORDS          = "found_keywords"
NO_KEYWORDS             = "no_keywords"
TIMEOUT_OR_ERROR        = "timeout_or_error"
RECOGNITION_UNAVAILABLE = "recognition_unavailable"
OCR_OUTCOMES = (FOUND_KEYWORDS, NO_KEYWORDS, TIMEOUT_OR_ERROR, RECOGNITION_UNAVAILABLE)


class OcrUnavailable(RuntimeError):
    """Raised by a recognizer when the OCR model/runtime cannot be used."""


@dataclass(frozen=True)
class OcrDiagnostic:
    outcome: str
    has_keywords: bool = False
    text_chars: int = 0
    sample: str = ""
    matches: tuple = ()   # ((keyword, confidence), ...)

    @property
    def failed(self):
        return self.outcome in (TIMEOUT_OR_ERROR, RECOGNITION_UNAVAILABLE)

    def to_dict(self):
        return {
            "outcome": self.outcome,
            "has_keywords": self.has_keywords,
            "text_chars": self.text_chars,
            "sample": self.sample,
            "matches": {k: round(c, 3) for k, c in self.matches},
        }


# ---------- Keyword gate ----------
def normalize_ocr(text):
    return (text or "").upper().translate(OCR_CONFUSIONS)

def levenshtein(a, b):
    """Edit distance with unit insert/delete/substitute costs (single-row DP)."""
    if len(a) < len(b):
        a, b = b, a
    row = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        prev, row[0] = row[0], i
        for j, cb in enumerate(b, 1):
            cur = row[j]
            row[j] = min(row[j] + 1, row[j - 1] + 1, prev + (ca != cb))
            prev = cur
    return row[-1]

def similarity(a, b):
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    d = levenshtein(a, b)
    return max(0.0, 1.0 - d / float(min(len(a), len(b))))

def detect_keywords(text, threshold=KEYWORD_THRESHOLD, keywords=KEYWORDS):
    """Map each keyword found in normalised ``text`` to its match confidence."""
    tokens = text.split()
    found = {}
    for kw in keywords:
        if kw in text:
            found[kw] = 1.0
            continue
        best = max((similarity(kw, t) for t in tokens), default=0.0)
        if best >= threshold:
            found[kw] = best
    return found

def diagnose_text(raw):
    text = normalize_ocr(raw)
    found = detect_keywords(text)
    logger.debug("ocr text: %d chars, keywords=%s", len(text), found)
    return OcrDiagnostic(
        outcome=FOUND_KEYWORDS if found else NO_KEYWORDS,
        has_keywords=bool(found),
        text_chars=len(text),
        sample=text[:OCR_SAMPLE_CHARS],
        matches=tuple(found.items()),
    )


# ---------- Recognizers ----------
def tesseract_recognizer(rgb, timeout=OCR_TIMEOUT_S):
    if not _HAS_TESS:
        raise OcrUnavailable("pytesseract is not installed")
    try:
        return pytesseract.image_to_string(rgb, config=TESS_CONFIG, timeout=timeout)
    except pytesseract.TesseractNotFoundError as e:
        raise OcrUnavailable(str(e)) from e

def unavailable_recognizer(rgb):
    raise OcrUnavailable("OCR disabled")


def run_ocr_gate(rgb, recognizer=None, timeout=OCR_TIMEOUT_S):
    """Run ``recognizer`` on ``rgb`` with a bounded wait; never raises.

    Returns an OcrDiagnostic whose outcome is one of OCR_OUTCOMES.
    """
    recognizer = recognizer or tesseract_recognizer
    outcome = {}

    def work():
        try:
            outcome["text"] = recognizer(rgb)
        except Exception as e:
            outcome["error"] = e

    # daemon: a recognizer hung past the deadline must not keep the process alive
    worker = threading.Thread(target=work, name="ktp-ocr", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        logger.warning("OCR timed out after %.1fs", timeout)
        return OcrDiagnostic(TIMEOUT_OR_ERROR)

    err = outcome.get("error")
    if isinstance(err, OcrUnavailable):
        logger.warning("OCR unavailable: %s", err)
        return OcrDiagnostic(RECOGNITION_UNAVAILABLE)
    if err is not None:
        logger.warning("OCR error: %s", err)
        return OcrDiagnostic(TIMEOUT_OR_ERROR)
    return diagnose_text(outcome.get("text"))
