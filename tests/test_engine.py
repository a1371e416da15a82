import numpy as np
import pytest

import validate_ktp as vk
from ktp_features import FeatureVector
from ktp_ocr import (
    OcrDiagnostic, OcrUnavailable, FOUND_KEYWORDS, NO_KEYWORDS,
    TIMEOUT_OR_ERROR, RECOGNITION_UNAVAILABLE, OCR_OUTCOMES,
)

FOUND = OcrDiagnostic(FOUND_KEYWORDS, has_keywords=True, text_chars=12, sample="NIK NAMA",
                      matches=(("NIK", 1.0), ("NAMA", 1.0)))
NONE_FOUND = OcrDiagnostic(NO_KEYWORDS, text_chars=20, sample="GROCERY RECEIPT")
TIMEOUT = OcrDiagnostic(TIMEOUT_OR_ERROR)
UNAVAILABLE = OcrDiagnostic(RECOGNITION_UNAVAILABLE)


def make_features(**overrides):
    # every normalised band sits at 0.75, sharpness at its top, colour at its floor
    base = dict(
        colored_fraction=0.02,
        sharpness_vlap=80.0,
        edge_density=0.01 + 0.75 * 0.24,
        rms_contrast=0.015 + 0.75 * 0.285,
        text_density=0.10 + 0.75 * 0.85,
        blue_bg_fraction=0.5,
        red_portrait_score=0.0,
        censor_area_frac=0.0,
        occlusion_frac=0.0,
        aspect_ratio=1.6,
        doc_type="grayscale_document",
    )
    base.update(overrides)
    return FeatureVector(**base)


def make_card(h=200, w=320):
    """Blue card covered in 2px dark-blue vertical strokes."""
    card = np.zeros((h, w, 3), dtype=np.uint8)
    card[:] = (64, 128, 255)
    for x in range(w):
        if x % 4 in (0, 1):
            card[:, x] = (30, 60, 120)
    return card


# ---------- normalisation ----------
@pytest.mark.parametrize("fn", [vk.normalize, vk.normalize_log])
def test_normalize_bounded_monotonic_and_clamp_stable(fn):
    lo, hi = 2.0, 80.0
    xs = np.linspace(-50, 200, 101)
    vals = [fn(x, lo, hi) for x in xs]
    assert all(0.0 <= v <= 1.0 for v in vals)
    assert all(b >= a for a, b in zip(vals, vals[1:]))
    for x in xs:
        assert fn(min(max(x, lo), hi), lo, hi) == pytest.approx(fn(x, lo, hi))
    assert fn(lo, lo, hi) == 0.0
    assert fn(hi, lo, hi) == pytest.approx(1.0)


def test_normalize_degenerate_band():
    assert vk.normalize(5.0, 1.0, 1.0) == 0.0
    assert vk.normalize_log(5.0, 3.0, 1.0) == 0.0


def test_normalize_log_compresses_tail():
    assert vk.normalize_log(20.0, 2.0, 80.0) > vk.normalize(20.0, 2.0, 80.0)


# ---------- penalties ----------
def test_censor_penalty_ramp():
    assert vk.censor_penalty_scale(0.0) == 1.0
    assert vk.censor_penalty_scale(0.03) == pytest.approx(0.575)
    assert vk.censor_penalty_scale(0.06) == pytest.approx(0.15)
    assert vk.censor_penalty_scale(0.5) == pytest.approx(0.15)


def test_occlusion_penalty_is_quadratic():
    assert vk.occlusion_penalty_scale(0.0) == 1.0
    assert vk.occlusion_penalty_scale(0.15) == pytest.approx(1 - 0.45 * 0.25)
    assert vk.occlusion_penalty_scale(0.30) == pytest.approx(0.55)
    assert vk.occlusion_penalty_scale(0.90) == pytest.approx(0.55)


def test_score_label_buckets():
    assert vk.score_label(80.0) == "good"
    assert vk.score_label(79.9) == "fair"
    assert vk.score_label(60.0) == "fair"
    assert vk.score_label(40.0) == "poor"
    assert vk.score_label(39.9) == "reject"


# ---------- KTP predicate ----------
def test_is_likely_ktp_requires_aspect_and_text():
    assert vk.is_likely_ktp(make_features())
    assert not vk.is_likely_ktp(make_features(aspect_ratio=1.1))
    assert not vk.is_likely_ktp(make_features(aspect_ratio=2.5))
    assert not vk.is_likely_ktp(make_features(text_density=0.11))


def test_is_likely_ktp_colour_evidence_is_either_or():
    assert not vk.is_likely_ktp(make_features(blue_bg_fraction=0.0))
    assert vk.is_likely_ktp(make_features(blue_bg_fraction=0.0, red_portrait_score=0.06))
    assert vk.is_likely_ktp(make_features(blue_bg_fraction=0.08))


# ---------- weighted score ----------
def test_weighted_score_photocopy_penalty():
    fv = make_features()
    raw = 100.0 * (0.10 * 0.0 + 0.12 * 1.0 + 0.18 * 0.75 + 0.28 * 0.75 + 0.32 * 0.75)
    assert raw == pytest.approx(70.5)
    assert vk.weighted_score(fv) == pytest.approx(raw * 0.60)

    result = vk.decide(fv, FOUND)
    assert result.score == pytest.approx(42.3)
    assert result.label == "poor"
    assert result.doc_type == "grayscale_document"


def test_weighted_score_color_document_skips_photocopy_penalty():
    fv = make_features(colored_fraction=0.40, doc_type="color_document")
    result = vk.decide(fv, FOUND)
    assert result.score == pytest.approx(100.0 * (0.10 + 0.12 + 0.78 * 0.75))
    assert result.label == "good"


def test_weighted_score_applies_censor_and_occlusion():
    fv = make_features(censor_area_frac=0.03, occlusion_frac=0.15)
    expected = 70.5 * 0.60 * 0.575 * (1 - 0.45 * 0.25)
    assert vk.weighted_score(fv) == pytest.approx(expected)


# ---------- decision tree ----------
def test_no_keywords_rejects_without_pixel_work(monkeypatch):
    def boom(rgb):
        raise AssertionError("features must not be computed")

    monkeypatch.setattr(vk, "extract_features", boom)
    result = vk.analyze_raster(make_card(), NONE_FOUND)
    assert result.label == "reject_non_ktp"
    assert result.score == 0.0
    assert result.doc_type == "not_ktp"
    assert result.ocr == NONE_FOUND


def test_no_keywords_rejects_even_perfect_features():
    fv = make_features(colored_fraction=0.40, doc_type="color_document")
    result = vk.decide(fv, NONE_FOUND)
    assert (result.label, result.score) == ("reject_non_ktp", 0.0)


def test_not_ktp_like_rejects():
    result = vk.decide(make_features(aspect_ratio=1.0), FOUND)
    assert (result.label, result.score) == ("reject_non_ktp", 0.0)


def test_censored_hard_reject():
    fv = make_features(colored_fraction=0.40, doc_type="color_document", censor_area_frac=0.10)
    result = vk.decide(fv, FOUND)
    assert (result.label, result.score) == ("reject_censored", 0.0)


@pytest.mark.parametrize("ocr", [TIMEOUT, UNAVAILABLE])
def test_ocr_failure_keeps_quarter_score(ocr):
    result = vk.decide(make_features(), ocr)
    assert result.score == pytest.approx(42.3 * 0.25)
    assert result.label == "reject"
    assert result.ocr.outcome == ocr.outcome


@pytest.mark.parametrize("overrides", [dict(edge_density=0.05), dict(text_density=0.13)])
def test_ocr_failure_with_weak_visuals_auto_rejects(overrides):
    fv = make_features(**overrides)
    result = vk.decide(fv, TIMEOUT)
    assert (result.label, result.score) == ("reject_non_ktp_ocr_timeout", 0.0)

    kept = vk.decide(fv, TIMEOUT, auto_reject_on_weak_visual=False)
    assert kept.label == "reject"
    assert kept.score == pytest.approx(vk.weighted_score(fv) * 0.25)


def test_result_is_immutable_and_serialisable():
    result = vk.decide(make_features(), FOUND)
    with pytest.raises(Exception):
        result.score = 99.0
    d = result.to_dict()
    assert d["label"] == "poor"
    assert d["ocr"]["outcome"] == FOUND_KEYWORDS
    assert set(d["features"]) >= {"sharpness_vlap", "censor_area_frac", "occlusion_frac"}


# ---------- end to end ----------
def test_analyze_uniform_gray_is_not_ktp():
    gray = np.full((100, 160, 3), 128, dtype=np.uint8)
    result = vk.analyze(gray, recognizer=lambda rgb: "NIK NAMA ALAMAT")
    assert result.label == "reject_non_ktp"
    assert result.score == 0.0
    assert result.features.text_density == 0.0


def test_analyze_blue_card_with_keywords():
    result = vk.analyze(make_card(), recognizer=lambda rgb: "NIK 3201 NAMA BUDI")
    fv = result.features
    assert fv.doc_type == "color_document"
    assert fv.blue_bg_fraction == pytest.approx(1.0)
    assert fv.edge_density == pytest.approx(1.0)
    assert fv.occlusion_frac == 0.0
    assert fv.censor_area_frac == 0.0
    assert result.ocr.outcome == FOUND_KEYWORDS
    assert 60.0 <= result.score < 80.0
    assert result.label == "fair"


def test_analyze_blue_card_ocr_unavailable():
    def recognizer(rgb):
        raise OcrUnavailable("no model")

    found = vk.analyze(make_card(), recognizer=lambda rgb: "NIK")
    result = vk.analyze(make_card(), recognizer=recognizer)
    assert result.ocr.outcome == RECOGNITION_UNAVAILABLE
    assert result.score == pytest.approx(found.score * 0.25)
    assert result.label == "reject"


def test_analyze_censored_card():
    card = make_card()
    card[:40, :] = 0
    result = vk.analyze(card, recognizer=lambda rgb: "NAMA")
    assert result.features.censor_area_frac == pytest.approx(40 * 320 / (200 * 320))
    assert (result.label, result.score) == ("reject_censored", 0.0)


def test_analyze_downscales_large_input():
    big = np.kron(make_card(100, 160), np.ones((20, 20, 1), dtype=np.uint8))
    result = vk.analyze(big, recognizer=lambda rgb: "NIK", max_dim=1400)
    assert result.features.aspect_ratio == pytest.approx(1.6, abs=0.01)


def test_analyze_rejects_empty_raster():
    with pytest.raises(ValueError):
        vk.analyze(np.zeros((0, 0, 3), dtype=np.uint8), recognizer=lambda rgb: "NIK")


@pytest.mark.parametrize("seed", range(5))
@pytest.mark.parametrize("text", ["NIK NAMA", "", None])
def test_analyze_always_well_formed(seed, text):
    rng = np.random.default_rng(seed)
    h, w = rng.integers(1, 60, size=2)
    img = rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8)

    def recognizer(rgb):
        if text is None:
            raise RuntimeError("engine failed")
        return text

    result = vk.analyze(img, recognizer=recognizer)
    assert 0.0 <= result.score <= 100.0
    assert result.label in vk.LABELS
    assert result.ocr.outcome in OCR_OUTCOMES
