#!/usr/bin/env python3
# ktp_features.py
# Desc   : Visual feature extraction for the KTP validator
#          - grayscale + saturation stats, VLAP sharpness, Sobel edges, RMS contrast
#          - heuristic text density, blue/red/occlusion colour regions, censor blocks
#          Rasters are numpy uint8 arrays (H, W, 3) in RGB order.

import logging
from dataclasses import dataclass

import numpy as np
import cv2

logger = logging.getLogger(__name__)

# =================== Tunables ===================
MAX_DIM                = 1400   # longer side after safe_downscale

COLOR_PIXEL_S_THR      = 0.18   # pixel counts as "colored" if S > thr
EDGE_MAG_THR           = 20.0   # Sobel magnitude (0..255 scale)
TEXT_GRAY_BAND         = (0.15, 0.85)

# KTP colour bands (degrees / 0..1 saturation)
BLUE_HUE_LO_HI         = (185.0, 265.0)
BLUE_MIN_SAT           = 0.15
RED_HUE_LO, RED_HUE_HI = 25.0, 335.0   # red if hue <= lo or hue >= hi
PORTRAIT_MIN_SAT       = 0.35
OCCLUSION_MIN_SAT      = 0.55

# Censor (redaction bar) blocks
CENSOR_MIN_BLOCK       = 8
CENSOR_BLOCK_DIVISOR   = 40
CENSOR_DARK_MEAN       = 0.08
CENSOR_BRIGHT_MEAN     = 0.96
CENSOR_FLAT_VAR        = 0.00035

# Document type by colored fraction
DOC_COLOR_FRAC_THR     = 0.35
DOC_TINTED_BG_FRAC_THR = 0.08
# =================================================


@dataclass(frozen=True)
class FeatureVector:
    colored_fraction: float
    sharpness_vlap: float
    edge_density: float
    rms_contrast: float
    text_density: float
    blue_bg_fraction: float
    red_portrait_score: float
    censor_area_frac: float
    occlusion_frac: float
    aspect_ratio: float
    doc_type: str


def check_raster(rgb):
    """Validate a pixel raster and return its RGB view (alpha dropped)."""
    if not isinstance(rgb, np.ndarray) or rgb.ndim != 3 or rgb.shape[2] < 3:
        raise ValueError(f"expected an (H, W, 3) RGB raster, got shape {getattr(rgb, 'shape', None)}")
    if rgb.dtype != np.uint8:
        raise ValueError(f"expected a uint8 raster, got dtype {rgb.dtype}")
    h, w = rgb.shape[:2]
    if h < 1 or w < 1:
        raise ValueError(f"raster must be at least 1x1, got {w}x{h}")
    return np.ascontiguousarray(rgb[..., :3]) if rgb.shape[2] > 3 else rgb


def safe_downscale(rgb, max_dim=MAX_DIM):
    h, w = rgb.shape[:2]
    larger = max(h, w)
    if larger <= max_dim:
        return rgb
    nw = max(1, int(w * max_dim / float(larger)))
    nh = max(1, int(h * max_dim / float(larger)))
    return cv2.resize(rgb, (nw, nh), interpolation=cv2.INTER_AREA)


# ---------- Raster statistics ----------
def _unit_channels(rgb):
    f = rgb.astype(np.float64) / 255.0
    return f[..., 0], f[..., 1], f[..., 2]

def _value_sat(r, g, b):
    maxc = np.maximum(r, np.maximum(g, b))
    minc = np.minimum(r, np.minimum(g, b))
    sat = np.where(maxc == 0, 0.0, (maxc - minc) / np.where(maxc == 0, 1.0, maxc))
    return maxc, minc, sat

def _hue(r, g, b, maxc, minc):
    span = maxc - minc + 1e-6
    hue = np.select(
        [maxc == r, maxc == g],
        [60.0 * np.fmod((g - b) / span, 6.0), 60.0 * ((b - r) / span + 2.0)],
        default=60.0 * ((r - g) / span + 4.0),
    )
    return np.where(hue < 0, hue + 360.0, hue)

def _planes(rgb):
    """Grayscale, hue (degrees) and HSV saturation planes, float64 (H, W)."""
    r, g, b = _unit_channels(rgb)
    maxc, minc, sat = _value_sat(r, g, b)
    gray = 0.299 * r + 0.587 * g + 0.114 * b
    return gray, _hue(r, g, b, maxc, minc), sat

def _hue_sat(rgb):
    _, hue, sat = _planes(rgb)
    return hue, sat

def colored_fraction(sat, sat_thr=COLOR_PIXEL_S_THR):
    return float((sat > sat_thr).mean())

def gray_and_saturation_fraction(rgb, sat_thr=COLOR_PIXEL_S_THR):
    gray, _, sat = _planes(rgb)
    return gray, colored_fraction(sat, sat_thr)


# ---------- Sharpness / edges / contrast ----------
def variance_of_laplacian(gray):
    h, w = gray.shape[:2]
    if h < 3 or w < 3:
        return 0.0
    # ksize=1 is the plain [[0,1,0],[1,-4,1],[0,1,0]] kernel
    lap = np.abs(cv2.Laplacian(gray, cv2.CV_64F, ksize=1)[1:-1, 1:-1])
    var = max(0.0, float((lap * lap).mean() - lap.mean() ** 2))
    return var * 1000.0

def sobel_edges(gray, thr=EDGE_MAG_THR):
    """Return (edge_mask, edge_fraction). The 1-pixel border is never an edge."""
    h, w = gray.shape[:2]
    mask = np.zeros((h, w), dtype=bool)
    if h < 3 or w < 3:
        return mask, 0.0
    gx = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    mag = cv2.magnitude(gx, gy) * 255.0
    mask[1:-1, 1:-1] = mag[1:-1, 1:-1] > thr
    interior = (h - 2) * (w - 2)
    return mask, float(mask.sum()) / interior

def rms_contrast(gray):
    mean = gray.mean()
    return float(np.sqrt(max(0.0, float((gray * gray).mean() - mean * mean))))

def text_density(gray, edges, band=TEXT_GRAY_BAND):
    lo, hi = band
    inked = edges & (gray > lo) & (gray < hi)
    return float(inked.sum()) / max(1, gray.size)


# ---------- Colour-region heuristics ----------
def _blue_band(hue):
    lo, hi = BLUE_HUE_LO_HI
    return (hue >= lo) & (hue <= hi)

def _red_band(hue):
    return (hue <= RED_HUE_LO) | (hue >= RED_HUE_HI)

def _right_third_start(w):
    return (w * 2) // 3

def blue_background_fraction(rgb, hue=None, sat=None):
    if hue is None or sat is None:
        hue, sat = _hue_sat(rgb)
    return float(((sat > BLUE_MIN_SAT) & _blue_band(hue)).mean())

def red_portrait_right_score(rgb, hue=None, sat=None):
    if hue is None or sat is None:
        hue, sat = _hue_sat(rgb)
    x0 = _right_third_start(rgb.shape[1])
    hue_r, sat_r = hue[:, x0:], sat[:, x0:]
    if hue_r.size == 0:
        return 0.0
    return float(((sat_r > PORTRAIT_MIN_SAT) & _red_band(hue_r)).mean())

def occlusion_fraction(rgb, hue=None, sat=None):
    if hue is None or sat is None:
        hue, sat = _hue_sat(rgb)
    w = rgb.shape[1]
    in_right = np.arange(w)[None, :] >= _right_third_start(w)
    expected_portrait = in_right & _red_band(hue)
    occl = (sat > OCCLUSION_MIN_SAT) & ~_blue_band(hue) & ~expected_portrait
    return float(occl.mean())


# ---------- Censor blocks ----------
def censor_block_size(h, w):
    return max(CENSOR_MIN_BLOCK, min(w, h) // CENSOR_BLOCK_DIVISOR)

def _block_stats(gray, block):
    h, w = gray.shape[:2]
    # integral images with a zero row/col in front
    s1 = np.zeros((h + 1, w + 1)); s1[1:, 1:] = gray.cumsum(0).cumsum(1)
    s2 = np.zeros((h + 1, w + 1)); s2[1:, 1:] = (gray * gray).cumsum(0).cumsum(1)
    ys = np.arange(0, h, block); ye = np.minimum(ys + block, h)
    xs = np.arange(0, w, block); xe = np.minimum(xs + block, w)

    def box(s):
        return (s[np.ix_(ye, xe)] - s[np.ix_(ys, xe)]
                - s[np.ix_(ye, xs)] + s[np.ix_(ys, xs)])

    n = np.outer(ye - ys, xe - xs).astype(np.float64)
    mean = box(s1) / n
    var = np.maximum(0.0, box(s2) / n - mean * mean)
    return ys, ye, xs, xe, n, mean, var

def _censored_blocks(mean, var):
    extreme = (mean < CENSOR_DARK_MEAN) | (mean > CENSOR_BRIGHT_MEAN)
    return extreme & (var < CENSOR_FLAT_VAR)

def censor_area_fraction(gray):
    h, w = gray.shape[:2]
    _, _, _, _, n, mean, var = _block_stats(gray, censor_block_size(h, w))
    total = n.sum()
    if total == 0:
        return 0.0
    return float(n[_censored_blocks(mean, var)].sum() / total)

def censor_block_mask(gray):
    h, w = gray.shape[:2]
    ys, ye, xs, xe, _, mean, var = _block_stats(gray, censor_block_size(h, w))
    hit = _censored_blocks(mean, var)
    mask = np.zeros((h, w), dtype=bool)
    for i, j in zip(*np.nonzero(hit)):
        mask[ys[i]:ye[i], xs[j]:xe[j]] = True
    return mask


# ---------- Document type ----------
def classify_document_type(colored_fraction):
    if colored_fraction > DOC_COLOR_FRAC_THR:
        return "color_document"
    if colored_fraction > DOC_TINTED_BG_FRAC_THR:
        return "grayscale_document_on_colored_bg"
    return "grayscale_document"


def extract_features(rgb):
    """Run every extractor once over ``rgb`` and return a FeatureVector.

    The grayscale field, hue/saturation planes and edge mask are computed a
    single time and shared by the extractors that need them.
    """
    rgb = check_raster(rgb)
    h, w = rgb.shape[:2]
    gray, hue, sat = _planes(rgb)
    colored = colored_fraction(sat)
    edges, edge_frac = sobel_edges(gray)

    fv = FeatureVector(
        colored_fraction=colored,
        sharpness_vlap=variance_of_laplacian(gray),
        edge_density=edge_frac,
        rms_contrast=rms_contrast(gray),
        text_density=text_density(gray, edges),
        blue_bg_fraction=blue_background_fraction(rgb, hue, sat),
        red_portrait_score=red_portrait_right_score(rgb, hue, sat),
        censor_area_frac=censor_area_fraction(gray),
        occlusion_frac=occlusion_fraction(rgb, hue, sat),
        aspect_ratio=w / float(h),
        doc_type=classify_document_type(colored),
    )
    logger.debug("features %dx%d: %s", w, h, fv)
    return fv
