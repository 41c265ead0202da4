"""
Frame quality scoring from source catalogs.

Scores are fast, explainable and deterministic: a sharpness term from the
median FWHM of well-formed stars, a richness term from the star count, and
signal-to-noise and roundness terms. Every number is auditable.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

import numpy as np

from .config import QualityConfig, QualityMetric
from .detection import SourceCatalog

logger = logging.getLogger(__name__)


def median_absolute_deviation(data: np.ndarray) -> float:
    """
    Compute the Median Absolute Deviation (MAD).

    MAD = median(|x - median(x)|)

    This is a robust measure of statistical dispersion,
    less sensitive to outliers than standard deviation.

    Parameters
    ----------
    data : np.ndarray
        Input data array.

    Returns
    -------
    float
        MAD value.
    """
    median = np.median(data)
    return float(np.median(np.abs(data - median)))


def estimate_noise_mad(data: np.ndarray) -> float:
    """
    Estimate noise level using MAD-based robust estimator.

    For Gaussian noise: sigma = 1.4826 * MAD

    Parameters
    ----------
    data : np.ndarray
        Image data.

    Returns
    -------
    float
        Estimated noise level (in ADU).
    """
    return 1.4826 * median_absolute_deviation(data)


def _snr_term(snr: float) -> float:
    # 20 log10(SNR) on a 0-100 scale: SNR 1 scores 0, SNR 1e5 and above full
    if snr <= 1.0:
        return 0.0
    return min(1.0, 20.0 * math.log10(snr) / 100.0)


def evaluate_quality(
    catalog: SourceCatalog,
    config: QualityConfig | None = None,
) -> QualityMetric:
    """
    Score one frame from its source catalog.

    Parameters
    ----------
    catalog : SourceCatalog
        Sources detected in the frame, with the frame's background level
        and noise.
    config : QualityConfig, optional
        Scoring parameters. Uses defaults if not provided.

    Returns
    -------
    QualityMetric
        Score in [0, 100]; 0 when no source passes the sanity filter.

    Notes
    -----
    Sources broader than ``max_fwhm`` or more elongated than
    ``max_ellipticity`` are left out of the FWHM, SNR and roundness
    statistics; the star count term uses the whole catalog.

        fwhm_term  = clip((fwhm_worst - median_fwhm) / (fwhm_worst - fwhm_best), 0, 1)
        star_term  = 1 - exp(-star_count / star_count_scale)
        snr_term   = clip(20 log10(snr) / 100, 0, 1)
        round_term = 1 - median_ellipticity
        score      = 100 * sum(w_k * term_k) / sum(w_k)

    SNR is the median peak over the background noise, or the median
    per-source SNR when the catalog carries no noise estimate. Each term
    only depends on its own statistic, so a smaller median FWHM never
    lowers the score at constant star count, and more stars never lower
    it at constant FWHM.
    """
    if config is None:
        config = QualityConfig()

    background = {
        "background_median": catalog.background_median,
        "background_noise": catalog.background_noise,
    }
    star_count = len(catalog)
    if star_count == 0:
        return QualityMetric(score=0.0, median_fwhm=0.0, star_count=0, **background)

    fwhm = catalog.fwhms()
    ellipticity = catalog.ellipticities()
    sane = (fwhm <= config.max_fwhm) & (ellipticity <= config.max_ellipticity)
    qualifying = int(np.count_nonzero(sane))
    if qualifying == 0:
        return QualityMetric(score=0.0, median_fwhm=0.0, star_count=star_count, **background)

    median_fwhm = float(np.median(fwhm[sane]))
    median_ellipticity = float(np.median(ellipticity[sane]))
    if catalog.background_noise > 0:
        snr = float(np.median(catalog.peaks()[sane])) / catalog.background_noise
    else:
        snr = float(np.median(catalog.snrs()[sane]))
    roundness = min(1.0, max(0.0, 1.0 - median_ellipticity))

    span = config.fwhm_worst - config.fwhm_best
    terms = (
        (config.fwhm_weight, min(1.0, max(0.0, (config.fwhm_worst - median_fwhm) / span))),
        (config.star_weight, 1.0 - math.exp(-star_count / config.star_count_scale)),
        (config.snr_weight, _snr_term(snr)),
        (config.roundness_weight, roundness),
    )
    total_weight = sum(w for w, _ in terms)
    score = 100.0 * sum(w * term for w, term in terms) / total_weight
    score = min(100.0, max(0.0, score))

    return QualityMetric(
        score=score,
        median_fwhm=median_fwhm,
        star_count=star_count,
        qualifying_count=qualifying,
        median_ellipticity=median_ellipticity,
        snr=snr,
        roundness=roundness,
        **background,
    )


def quality_to_weights(metrics: Sequence[QualityMetric]) -> np.ndarray:
    """
    Normalize quality scores into stacking weights.

    Parameters
    ----------
    metrics : sequence of QualityMetric
        One metric per frame, in stacking order.

    Returns
    -------
    np.ndarray
        float64 weights in [0, 1], the best frame at 1. All ones when every
        score is zero.
    """
    scores = np.array([m.score for m in metrics], dtype=np.float64)
    if scores.size == 0:
        return scores
    top = scores.max()
    if top <= 0:
        return np.ones_like(scores)
    return np.clip(scores / top, 0.0, 1.0)


def rank_frames(metrics: Sequence[QualityMetric]) -> list[int]:
    """
    Order frame indices by quality score.

    Returns
    -------
    list[int]
        Indices sorted by score, descending (best first); ties keep input
        order.
    """
    order = sorted(range(len(metrics)), key=lambda i: -metrics[i].score)

    if order:
        logger.debug(
            "Ranked %d frames. Best: %.1f, Worst: %.1f",
            len(order),
            metrics[order[0]].score,
            metrics[order[-1]].score,
        )

    return order
