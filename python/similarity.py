"""
String Similarity Primitives
Edit-distance metrics and the composite name-similarity score used by the matching engine

Features:
- Levenshtein, Damerau-Levenshtein and Jaro computed by rapidfuzz
- Jaro-Winkler with a prefix boost capped at 4 characters
- Composite score: 0.3 lev ratio + 0.2 jaro + 0.3 jaro-winkler + 0.2 damerau ratio
- Best-match search and name-match decision helpers

All functions are pure and safe to call from any thread or coroutine.
"""

import re
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any, Iterable

from rapidfuzz.distance import Levenshtein, DamerauLevenshtein, Jaro

logger = logging.getLogger(__name__)

# Composite score weights
COMPOSITE_WEIGHTS = {
    'levenshtein_ratio': 0.3,
    'jaro': 0.2,
    'jaro_winkler': 0.3,
    'damerau_levenshtein_ratio': 0.2,
}

JARO_WINKLER_BOOST_THRESHOLD = 0.7
JARO_WINKLER_MAX_PREFIX = 4
HIGH_JARO_WINKLER = 0.9
STRICT_MODE_MINIMUM = 0.9

_PUNCTUATION_RE = re.compile(r'[^\w\s]')
_WHITESPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class SimilarityMetrics:
    """All similarity measures for one pair of strings"""
    exact: bool
    levenshtein: int
    levenshtein_ratio: float
    jaro: float
    jaro_winkler: float
    damerau_levenshtein: int
    damerau_levenshtein_ratio: float
    composite: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BestMatch:
    """A candidate string that cleared the find_best_matches threshold"""
    candidate: str
    score: float
    metrics: SimilarityMetrics


@dataclass(frozen=True)
class NameMatchResult:
    """Outcome of is_name_match"""
    is_match: bool
    confidence: float
    reason: str
    threshold: float
    metrics: SimilarityMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_match': self.is_match,
            'confidence': self.confidence,
            'reason': self.reason,
            'threshold': self.threshold,
            'metrics': self.metrics.to_dict(),
        }


def normalize_string(text: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace"""
    if not text:
        return ''
    text = _PUNCTUATION_RE.sub('', str(text).lower())
    return _WHITESPACE_RE.sub(' ', text).strip()


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)"""
    return Levenshtein.distance(a or '', b or '')


def similarity_ratio(a: str, b: str) -> float:
    """Levenshtein distance expressed as a similarity in [0, 1]

    Two empty strings are identical and score 1.0.
    """
    a = a or ''
    b = b or ''
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return (longest - levenshtein_distance(a, b)) / longest


def jaro_similarity(a: str, b: str) -> float:
    """Jaro similarity with the classic floor(max_len / 2) - 1 match window"""
    a = a or ''
    b = b or ''
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    if max(len(a), len(b)) // 2 - 1 < 0:
        return 0.0
    return Jaro.similarity(a, b)


def jaro_winkler_similarity(a: str, b: str, prefix_scale: float = 0.1) -> float:
    """Jaro similarity boosted by the length of the common prefix (max 4)"""
    a = a or ''
    b = b or ''
    jaro = jaro_similarity(a, b)
    if jaro < JARO_WINKLER_BOOST_THRESHOLD:
        return jaro

    prefix = 0
    for ch_a, ch_b in zip(a[:JARO_WINKLER_MAX_PREFIX], b[:JARO_WINKLER_MAX_PREFIX]):
        if ch_a != ch_b:
            break
        prefix += 1

    return jaro + prefix * prefix_scale * (1.0 - jaro)


def damerau_levenshtein_distance(a: str, b: str) -> int:
    """Edit distance that also counts an adjacent transposition as one edit"""
    return DamerauLevenshtein.distance(a or '', b or '')


def _distance_ratio(distance: int, a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - distance) / longest


def calculate_similarity_metrics(a: str, b: str, normalize: bool = True) -> SimilarityMetrics:
    """Compute every primitive for a pair of strings plus the composite score

    Args:
        a: First string
        b: Second string
        normalize: Lowercase and strip punctuation before comparing

    Returns:
        SimilarityMetrics value
    """
    if normalize:
        a = normalize_string(a)
        b = normalize_string(b)
    else:
        a = a or ''
        b = b or ''

    if a == b:
        return SimilarityMetrics(
            exact=True,
            levenshtein=0,
            levenshtein_ratio=1.0,
            jaro=1.0,
            jaro_winkler=1.0,
            damerau_levenshtein=0,
            damerau_levenshtein_ratio=1.0,
            composite=1.0,
        )

    lev = levenshtein_distance(a, b)
    dl = damerau_levenshtein_distance(a, b)
    lev_ratio = _distance_ratio(lev, a, b)
    dl_ratio = _distance_ratio(dl, a, b)
    jaro = jaro_similarity(a, b)
    jaro_winkler = jaro_winkler_similarity(a, b)

    composite = (
        lev_ratio * COMPOSITE_WEIGHTS['levenshtein_ratio']
        + jaro * COMPOSITE_WEIGHTS['jaro']
        + jaro_winkler * COMPOSITE_WEIGHTS['jaro_winkler']
        + dl_ratio * COMPOSITE_WEIGHTS['damerau_levenshtein_ratio']
    )

    return SimilarityMetrics(
        exact=False,
        levenshtein=lev,
        levenshtein_ratio=lev_ratio,
        jaro=jaro,
        jaro_winkler=jaro_winkler,
        damerau_levenshtein=dl,
        damerau_levenshtein_ratio=dl_ratio,
        composite=min(1.0, max(0.0, composite)),
    )


def find_best_matches(target: str, candidates: Iterable[str], threshold: float = 0.6,
                      max_results: int = 10, normalize: bool = True) -> List[BestMatch]:
    """Rank candidates by composite similarity to target

    Args:
        target: String to compare against
        candidates: Strings to rank
        threshold: Minimum composite score to keep
        max_results: Maximum number of results returned
        normalize: Normalize strings before comparing

    Returns:
        BestMatch list sorted by descending score
    """
    results = []
    for candidate in candidates:
        metrics = calculate_similarity_metrics(target, candidate, normalize=normalize)
        if metrics.composite >= threshold:
            results.append(BestMatch(candidate=candidate, score=metrics.composite, metrics=metrics))

    results.sort(key=lambda m: m.score, reverse=True)
    return results[:max_results]


def is_name_match(a: str, b: str, threshold: float = 0.8, strict_mode: bool = False) -> NameMatchResult:
    """Decide whether two names refer to the same party

    An exact normalized match always matches. A Jaro-Winkler score of 0.9 or
    more matches regardless of the composite and reports the higher of the
    two as confidence. Otherwise the composite must reach the threshold, and
    in strict mode it must also reach 0.9.
    """
    metrics = calculate_similarity_metrics(a, b)

    if metrics.exact:
        return NameMatchResult(True, 1.0, 'exact_match', threshold, metrics)

    if metrics.jaro_winkler >= HIGH_JARO_WINKLER:
        confidence = max(metrics.composite, metrics.jaro_winkler)
        return NameMatchResult(True, confidence, 'jaro_winkler_high', threshold, metrics)

    if strict_mode and metrics.composite < STRICT_MODE_MINIMUM:
        return NameMatchResult(False, metrics.composite, 'strict_mode_threshold', threshold, metrics)

    return NameMatchResult(metrics.composite >= threshold, metrics.composite,
                           'composite_score', threshold, metrics)
