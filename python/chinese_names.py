"""
Chinese Name Transliteration and Matching
Splits Chinese names into surname and given name, generates Latin romanizations
and matches romanized names against Chinese-script names

All functions are synchronous and local: romanization uses fixed lookup
tables from chinese_names_data, comparison uses the similarity module.
"""

import re
import logging
from dataclasses import dataclass, field
from itertools import product
from typing import Dict, List, Optional, Any, Tuple, Iterable

from chinese_names_data import (
    CHINESE_SURNAMES,
    CHINESE_GIVEN_NAMES,
    CHINESE_COMPOUND_SURNAMES,
    COMPOUND_SURNAMES,
)
from similarity import SimilarityMetrics, calculate_similarity_metrics, normalize_string

logger = logging.getLogger(__name__)

CJK_PATTERN = re.compile(r'[\u4e00-\u9fff]')


@dataclass(frozen=True)
class ChineseNameSplit:
    """Surname / given name segmentation of a Chinese name"""
    surname: str
    given_name: str
    is_valid: bool
    is_compound_surname: bool = False


@dataclass(frozen=True)
class ChineseNameMatch:
    """Result of matching a romanized name against a Chinese name"""
    is_match: bool
    confidence: float
    reason: str
    matched_romanization: Optional[str] = None
    all_possible_romanizations: Tuple[str, ...] = ()
    metrics: Optional[SimilarityMetrics] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_match': self.is_match,
            'confidence': self.confidence,
            'reason': self.reason,
            'matched_romanization': self.matched_romanization,
            'all_possible_romanizations': list(self.all_possible_romanizations),
            'metrics': self.metrics.to_dict() if self.metrics else None,
        }


@dataclass(frozen=True)
class ChineseNameInfo:
    """Normalized view of a name that may be written in Chinese"""
    original: str
    normalized: str
    is_chinese: bool
    is_valid: bool
    surname: str = ''
    given_name: str = ''
    romanizations: Tuple[str, ...] = field(default_factory=tuple)
    aliases: Tuple[str, ...] = field(default_factory=tuple)


def contains_chinese(text: Optional[str]) -> bool:
    """True if text contains a CJK unified ideograph"""
    if not text:
        return False
    return CJK_PATTERN.search(text) is not None


def extract_chinese(text: Optional[str]) -> str:
    """Only the CJK unified ideographs of text, in order"""
    if not text:
        return ''
    return ''.join(CJK_PATTERN.findall(text))


def split_chinese_name(chinese_name: Optional[str]) -> ChineseNameSplit:
    """Split a Chinese name into surname and given name

    Compound surnames are checked first. Otherwise the first character is the
    surname, whether or not it appears in the surname table.
    """
    if not contains_chinese(chinese_name):
        return ChineseNameSplit(surname='', given_name='', is_valid=False)

    clean = extract_chinese(chinese_name)
    if len(clean) < 2:
        return ChineseNameSplit(surname='', given_name=clean, is_valid=False)

    for compound in COMPOUND_SURNAMES:
        if clean.startswith(compound):
            return ChineseNameSplit(
                surname=compound,
                given_name=clean[len(compound):],
                is_valid=True,
                is_compound_surname=True,
            )

    return ChineseNameSplit(surname=clean[0], given_name=clean[1:], is_valid=True)


def get_romanizations(chars: str, is_surname: bool = False) -> List[str]:
    """Known romanizations of a surname or of one given-name character"""
    if not contains_chinese(chars):
        return []
    if is_surname:
        found = CHINESE_COMPOUND_SURNAMES.get(chars) or CHINESE_SURNAMES.get(chars, ())
    else:
        found = CHINESE_GIVEN_NAMES.get(chars, ())
    return list(found)


def generate_romanizations(chinese_name: Optional[str]) -> List[str]:
    """All Latin renderings of a Chinese name, without duplicates

    Every surname romanization is combined with every choice of given-name
    character romanizations (a character with no known romanization stands
    for itself). Each combination is emitted surname-first, surname-comma and
    given-first, each with the given name concatenated (syllable case kept)
    and spaced, so 王建明 yields 'Wang JianMing', 'Wang Jian Ming',
    'Wang, JianMing', ... 'Jian Ming Wang'.
    """
    if not contains_chinese(chinese_name):
        return []

    split = split_chinese_name(chinese_name)
    if not split.is_valid:
        return []

    surname_options = get_romanizations(split.surname, is_surname=True)
    given_options = [get_romanizations(ch) or [ch] for ch in split.given_name]

    results = []
    for surname in surname_options:
        for combo in product(*given_options):
            given_joined = ''.join(combo)
            given_spaced = ' '.join(combo)
            results.extend([
                f"{surname} {given_joined}",
                f"{surname} {given_spaced}",
                f"{surname}, {given_joined}",
                f"{surname}, {given_spaced}",
                f"{given_joined} {surname}",
                f"{given_spaced} {surname}",
            ])

    return list(dict.fromkeys(results))


def best_romanization(candidate: str, romanizations: Iterable[str],
                      fuzzy_match: bool = True) -> Tuple[float, Optional[str], Optional[SimilarityMetrics]]:
    """Best composite score of candidate against a set of romanizations

    Returns:
        Tuple of (confidence, matched romanization, metrics). An exact
        normalized match returns confidence 1.0 and no metrics.
    """
    normalized_candidate = normalize_string(candidate)
    romanizations = list(romanizations)

    for romanization in romanizations:
        if normalize_string(romanization) == normalized_candidate:
            return 1.0, romanization, None

    if not fuzzy_match:
        return 0.0, None, None

    best_score, best_rom, best_metrics = 0.0, None, None
    for romanization in romanizations:
        metrics = calculate_similarity_metrics(normalized_candidate, romanization)
        if metrics.composite > best_score:
            best_score, best_rom, best_metrics = metrics.composite, romanization, metrics

    return best_score, best_rom, best_metrics


def match_chinese_name(candidate: str, chinese_name: str, threshold: float = 0.8,
                       fuzzy_match: bool = True) -> ChineseNameMatch:
    """Check whether a romanized name could be a rendering of a Chinese name

    Args:
        candidate: Romanized name, e.g. 'Wang Wei'
        chinese_name: Chinese-script name, e.g. '王伟'
        threshold: Minimum composite score for a fuzzy match
        fuzzy_match: Fall back to similarity scoring when no exact match

    Returns:
        ChineseNameMatch with reason one of exact_match, fuzzy_match,
        below_threshold, empty_input, not_chinese, no_romanizations
    """
    if not candidate or not chinese_name:
        return ChineseNameMatch(is_match=False, confidence=0.0, reason='empty_input')

    if not contains_chinese(chinese_name):
        return ChineseNameMatch(is_match=False, confidence=0.0, reason='not_chinese')

    romanizations = tuple(generate_romanizations(chinese_name))
    if not romanizations:
        return ChineseNameMatch(is_match=False, confidence=0.0, reason='no_romanizations')

    confidence, matched, metrics = best_romanization(candidate, romanizations, fuzzy_match)

    if confidence == 1.0 and metrics is None:
        return ChineseNameMatch(
            is_match=True,
            confidence=1.0,
            reason='exact_match',
            matched_romanization=matched,
            all_possible_romanizations=romanizations,
        )

    is_match = confidence >= threshold
    return ChineseNameMatch(
        is_match=is_match,
        confidence=confidence,
        reason='fuzzy_match' if is_match else 'below_threshold',
        matched_romanization=matched,
        all_possible_romanizations=romanizations,
        metrics=metrics,
    )


def generate_chinese_name_aliases(chinese_name: Optional[str]) -> List[str]:
    """Romanizations plus spelling variants seen on identity documents

    Adds each romanization without spaces, with commas as spaces, its
    initials (upper and lower case), first part plus last initial and last
    part plus first initial.
    """
    romanizations = generate_romanizations(chinese_name)
    aliases = dict.fromkeys(romanizations)

    for romanization in romanizations:
        aliases[re.sub(r'\s+', '', romanization)] = None
        aliases[re.sub(r'\s+', ' ', romanization.replace(',', ' ')).strip()] = None

        parts = [p for p in re.split(r'[\s,]+', romanization) if p]
        if len(parts) >= 2:
            initials = ''.join(part[0] for part in parts)
            aliases[initials] = None
            aliases[initials.lower()] = None
            aliases[f"{parts[0]} {parts[-1][0]}"] = None
            aliases[f"{parts[-1]} {parts[0][0]}"] = None

    return list(aliases)


def normalize_chinese_name(name: Optional[str]) -> ChineseNameInfo:
    """Describe a name, expanding it when it is written in Chinese"""
    if not name:
        return ChineseNameInfo(original='', normalized='', is_chinese=False, is_valid=False)

    if not contains_chinese(name):
        return ChineseNameInfo(original=name, normalized=name.strip(), is_chinese=False, is_valid=True)

    chinese_chars = extract_chinese(name)
    split = split_chinese_name(chinese_chars)
    return ChineseNameInfo(
        original=name,
        normalized=chinese_chars,
        is_chinese=True,
        is_valid=split.is_valid,
        surname=split.surname,
        given_name=split.given_name,
        romanizations=tuple(generate_romanizations(chinese_chars)),
        aliases=tuple(generate_chinese_name_aliases(chinese_chars)),
    )
