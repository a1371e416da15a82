#!/usr/bin/env python3
# validate_ktp.py
# Version: 2.0
# Desc   : KTP likelihood + scan quality Final Score (0..100)
#          - OCR keyword gate first (NIK/NAMA/ALAMAT), visual features after
#          - KTP predicate (aspect, text density, blue background / red portrait)
#          - hard reject on censor bars, weighted score, photocopy/censor/occlusion penalties
#          - OCR timeout/unavailable: score x0.25, auto-reject on weak visuals

__version__ = "2.0"

import os, sys, argparse, json, math, logging
from dataclasses import dataclass

import numpy as np
import cv2

import ktp_features as kf
import ktp_ocr
from ktp_features import FeatureVector, extract_features, safe_downscale, check_raster
from ktp_ocr import OcrDiagnostic, NO_KEYWORDS, run_ocr_gate

logger = logging.getLogger(__name__)

# =================== Tunables ===================
MAX_DIM                = kf.MAX_DIM

# KTP likelihood
KTP_ASPECT_MIN, KTP_ASPECT_MAX = 1.2, 2.4
KTP_MIN_BLUE_BG_FRAC   = 0.08
KTP_MIN_TEXT_DENSITY   = 0.12
KTP_MIN_PORTRAIT_RIGHT = 0.05

# Weights (sum to 1.0)
W_COLOR, W_SHARP, W_EDGE, W_CONTR, W_TEXT = 0.10, 0.12, 0.18, 0.28, 0.32

# Normalisation bands
SHARP_LO_HI  = (2.0, 80.0)      # log-scaled
EDGE_LO_HI   = (0.01, 0.25)
CONTR_LO_HI  = (0.015, 0.30)
TEXT_LO_HI   = (0.10, 0.95)
COLOR_LO_HI  = (0.02, 0.35)

# Penalties
PHOTOCOPY_PENALTY      = 0.60
CENSOR_PENALTY_MAX     = 0.85
CENSOR_KNEE            = 0.06
OCCLUSION_PENALTY_MAX  = 0.45
OCCLUSION_KNEE         = 0.30
HARD_CENSOR_REJECT     = 0.10

# OCR failure handling
OCR_TIMEOUT_S                  = ktp_ocr.OCR_TIMEOUT_S
OCR_TIMEOUT_PENALTY_SCALE      = 0.25
OCR_AUTO_REJECT_ON_WEAK_VISUAL = True
OCR_WEAK_TEXT_DENSITY          = 0.16
OCR_WEAK_EDGE_FRAC             = 0.06

# Final label thresholds
LABEL_THRESHOLDS = ((80.0, "good"), (60.0, "fair"), (40.0, "poor"))
# =================================================

REJECT                     = "reject"
REJECT_NON_KTP             = "reject_non_ktp"
REJECT_CENSORED            = "reject_censored"
REJECT_NON_KTP_OCR_TIMEOUT = "reject_non_ktp_ocr_timeout"
LABELS = ("good", "fair", "poor", REJECT, REJECT_NON_KTP, REJECT_CENSORED,
          REJECT_NON_KTP_OCR_TIMEOUT)


@dataclass(frozen=True)
class AnalysisResult:
    score: float
    label: str
    doc_type: str
    features: FeatureVector
    ocr: OcrDiagnostic

    def to_dict(self):
        f = self.features
        return {
            "score": round(self.score, 1),
            "label": self.label,
            "doc_type": self.doc_type,
            "features": {
                "colored_fraction": round(f.colored_fraction, 3),
                "sharpness_vlap": round(f.sharpness_vlap, 2),
                "edge_density": round(f.edge_density, 4),
                "rms_contrast": round(f.rms_contrast, 4),
                "text_density": round(f.text_density, 4),
                "blue_bg_fraction": round(f.blue_bg_fraction, 3),
                "red_portrait_score": round(f.red_portrait_score, 3),
                "censor_area_frac": round(f.censor_area_frac, 3),
                "occlusion_frac": round(f.occlusion_frac, 3),
                "aspect_ratio": round(f.aspect_ratio, 3),
            },
            "ocr": self.ocr.to_dict(),
        }


# ---------- Normalisation ----------
def normalize(x, lo, hi):
    if hi <= lo: return 0.0
    return float(np.clip((x - lo) / (hi - lo), 0.0, 1.0))

def normalize_log(x, lo, hi):
    if hi <= lo: return 0.0
    v = min(max(x, lo), hi)
    l, h = math.log1p(lo), math.log1p(hi)
    return float(np.clip((math.log1p(v) - l) / (h - l), 0.0, 1.0))

def normalized_features(fv):
    return dict(
        sharp=normalize_log(fv.sharpness_vlap, *SHARP_LO_HI),
        edge=normalize(fv.edge_density, *EDGE_LO_HI),
        contr=normalize(fv.rms_contrast, *CONTR_LO_HI),
        text=normalize(fv.text_density, *TEXT_LO_HI),
        color=normalize(fv.colored_fraction, *COLOR_LO_HI),
    )


# ---------- Predicates & penalties ----------
def is_likely_ktp(fv):
    aspect_ok = KTP_ASPECT_MIN <= fv.aspect_ratio <= KTP_ASPECT_MAX
    text_ok = fv.text_density >= KTP_MIN_TEXT_DENSITY
    bg_ok = fv.blue_bg_fraction >= KTP_MIN_BLUE_BG_FRAC
    portrait_ok = fv.red_portrait_score >= KTP_MIN_PORTRAIT_RIGHT
    return aspect_ok and text_ok and (bg_ok or portrait_ok)

def censor_penalty_scale(censor_frac):
    return 1.0 - CENSOR_PENALTY_MAX * float(np.clip(censor_frac / CENSOR_KNEE, 0, 1))

def occlusion_penalty_scale(occl_frac):
    return 1.0 - OCCLUSION_PENALTY_MAX * float(np.clip(occl_frac / OCCLUSION_KNEE, 0, 1)) ** 2

def score_label(score):
    for thr, label in LABEL_THRESHOLDS:
        if score >= thr:
            return label
    return REJECT

def weighted_score(fv):
    """Purely visual score: weighted bands, photocopy cap, censor/occlusion penalties."""
    n = normalized_features(fv)
    score = 100.0 * (W_COLOR * n["color"] + W_SHARP * n["sharp"] + W_EDGE * n["edge"]
                     + W_CONTR * n["contr"] + W_TEXT * n["text"])
    if fv.doc_type != "color_document":
        score *= PHOTOCOPY_PENALTY
    score *= censor_penalty_scale(fv.censor_area_frac)
    score *= occlusion_penalty_scale(fv.occlusion_frac)
    return float(np.clip(score, 0.0, 100.0))


# ---------- Decision engine ----------
def _result(score, label, fv, ocr):
    return AnalysisResult(score=float(np.clip(score, 0.0, 100.0)), label=label,
                          doc_type=fv.doc_type, features=fv, ocr=ocr)

def _skipped_features(rgb):
    h, w = rgb.shape[:2]
    return FeatureVector(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0,
                         aspect_ratio=w / float(h), doc_type="not_ktp")

def decide(fv, ocr, auto_reject_on_weak_visual=OCR_AUTO_REJECT_ON_WEAK_VISUAL):
    if ocr.outcome == NO_KEYWORDS:
        logger.debug("reject: OCR found no keywords")
        return _result(0.0, REJECT_NON_KTP, fv, ocr)
    if not is_likely_ktp(fv):
        logger.debug("reject: not KTP-like (aspect=%.2f text=%.3f blue=%.3f red=%.3f)",
                     fv.aspect_ratio, fv.text_density, fv.blue_bg_fraction, fv.red_portrait_score)
        return _result(0.0, REJECT_NON_KTP, fv, ocr)
    if fv.censor_area_frac >= HARD_CENSOR_REJECT:
        logger.debug("reject: censored area %.3f", fv.censor_area_frac)
        return _result(0.0, REJECT_CENSORED, fv, ocr)

    score = weighted_score(fv)
    if ocr.failed:
        score *= OCR_TIMEOUT_PENALTY_SCALE
        weak_text = (normalize(fv.text_density, *TEXT_LO_HI)
                     < normalize(OCR_WEAK_TEXT_DENSITY, *TEXT_LO_HI))
        weak_edges = fv.edge_density < OCR_WEAK_EDGE_FRAC
        if auto_reject_on_weak_visual and (weak_text or weak_edges):
            logger.debug("reject: OCR %s with weak visuals", ocr.outcome)
            return _result(0.0, REJECT_NON_KTP_OCR_TIMEOUT, fv, ocr)

    return _result(score, score_label(score), fv, ocr)

def analyze_raster(rgb, ocr, auto_reject_on_weak_visual=OCR_AUTO_REJECT_ON_WEAK_VISUAL):
    """Score an (already downscaled) RGB raster given its OCR diagnostic."""
    rgb = check_raster(rgb)
    if ocr.outcome == NO_KEYWORDS:
        return decide(_skipped_features(rgb), ocr, auto_reject_on_weak_visual)
    return decide(extract_features(rgb), ocr, auto_reject_on_weak_visual)

def analyze(rgb, recognizer=None, ocr_timeout=OCR_TIMEOUT_S, max_dim=MAX_DIM,
            auto_reject_on_weak_visual=OCR_AUTO_REJECT_ON_WEAK_VISUAL):
    rgb = safe_downscale(check_raster(rgb), max_dim)
    ocr = run_ocr_gate(rgb, recognizer, timeout=ocr_timeout)
    return analyze_raster(rgb, ocr, auto_reject_on_weak_visual)


# -------------------- CLI + glue ----------------------

def _save_debug(rgb, save_debug_dir, base_name):
    os.makedirs(save_debug_dir, exist_ok=True)
    dbg = os.path.splitext(os.path.basename(base_name))[0]
    gray, _ = kf.gray_and_saturation_fraction(rgb)
    edges, _ = kf.sobel_edges(gray)
    censor = kf.censor_block_mask(gray)
    cv2.imwrite(os.path.join(save_debug_dir, f"{dbg}_scaled.png"), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    cv2.imwrite(os.path.join(save_debug_dir, f"{dbg}_edges.png"), edges.astype(np.uint8) * 255)
    cv2.imwrite(os.path.join(save_debug_dir, f"{dbg}_censor.png"), censor.astype(np.uint8) * 255)

def analyze_file(path, recognizer=None, want_json=True, save_debug=None,
                 max_dim=MAX_DIM, ocr_timeout=OCR_TIMEOUT_S,
                 auto_reject_on_weak_visual=OCR_AUTO_REJECT_ON_WEAK_VISUAL):
    bgr = cv2.imdecode(np.fromfile(path, dtype=np.uint8), cv2.IMREAD_COLOR)
    if bgr is None:
        raise RuntimeError("Failed to read image")
    rgb = safe_downscale(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB), max_dim)

    ocr = run_ocr_gate(rgb, recognizer, timeout=ocr_timeout)
    result = analyze_raster(rgb, ocr, auto_reject_on_weak_visual)
    if save_debug:
        _save_debug(rgb, save_debug, path)

    out = {"file": os.path.basename(path), **result.to_dict(), "version": __version__}
    if want_json:
        return json.dumps(out, ensure_ascii=False)

    f, o = out["features"], out["ocr"]
    lines = [f"{out['file']}: {out['label']} (score={out['score']}, doc={out['doc_type']})"]
    lines.append("  " + " ".join(f"{k}={v}" for k, v in f.items()))
    lines.append(f"  ocr={o['outcome']} keywords={o['has_keywords']} chars={o['text_chars']}")
    return "\n".join(lines)

def _collect_files(paths):
    files = []
    for p in paths:
        if os.path.isdir(p):
            for root, _, names in os.walk(p):
                for n in sorted(names):
                    if n.lower().endswith((".png",".jpg",".jpeg",".bmp",".tif",".tiff",".webp")):
                        files.append(os.path.join(root, n))
        else:
            files.append(p)
    return files

def main(argv=None):
    ap = argparse.ArgumentParser(description="KTP validator v2.0 - OCR keyword gate + visual KTP check + Final Score (0..100)")
    ap.add_argument("paths", nargs="+", help="image file(s) or folder(s)")
    ap.add_argument("--plain", action="store_true", help="print human-readable instead of JSON")
    ap.add_argument("--verbose", action="store_true", help="log debug stats to stderr")
    ap.add_argument("--save-debug", default=None, help="directory to save scaled/edge/censor debug images")
    ap.add_argument("--max-dim", type=int, default=MAX_DIM, help="downscale longer side to this many pixels")
    ap.add_argument("--ocr-timeout", type=float, default=OCR_TIMEOUT_S, help="seconds to wait for OCR")
    ap.add_argument("--no-ocr", action="store_true", help="skip OCR (scored as recognition_unavailable)")
    ap.add_argument("--no-auto-reject", action="store_true",
                    help="keep the penalised score when OCR fails on weak visuals")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="[%(levelname)s] %(name)s: %(message)s")

    files = _collect_files(args.paths)
    if not files:
        print(json.dumps({"error":"no_image_files_found"}))
        sys.exit(2)

    recognizer = ktp_ocr.unavailable_recognizer if args.no_ocr else None
    want_json = not args.plain
    for f in files:
        try:
            print(analyze_file(f, recognizer=recognizer, want_json=want_json,
                               save_debug=args.save_debug, max_dim=args.max_dim,
                               ocr_timeout=args.ocr_timeout,
                               auto_reject_on_weak_visual=not args.no_auto_reject))
        except (RuntimeError, ValueError, OSError, cv2.error) as e:
            err = {"file": os.path.basename(f), "error": str(e)}
            print(json.dumps(err) if want_json else f"{err['file']}: ERROR -> {err['error']}")

if __name__ == "__main__":
    main()
