"""
Sanctions Matching Engine v3.0
Screens a client profile against every configured watchlist and aggregates
the hits into one explainable risk verdict

Features:
- Search-term extraction from names, company names and aliases
- Concurrent per-source search over cached entity sets
- Source weighting and per-match risk levels (CRITICAL/HIGH/MEDIUM/LOW)
- Aggregate risk score (0-100) and recommendation
- Batch screening with per-item failure isolation
- Statistics and forced refresh of all sources
- Command line interface

A source that cannot be searched contributes no matches; screening always
returns a result.
"""

import argparse
import asyncio
import json
import logging
import math
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable, Union, Sequence

from config_manager import get_config, ConfigManager, configure_logging
from downloader import WatchlistSource, build_sources
from similarity import normalize_string
from source_cache import SourceCache, SearchError
from watchlist_models import (
    ClientProfile,
    MatchCandidate,
    Recommendation,
    RiskLevel,
    SanctionedEntity,
    ScreeningResult,
    ScreeningSummary,
    WeightedMatch,
)
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

__all__ = [
    'SanctionsMatchingEngine',
    'SearchError',
    'extract_search_terms',
    'calculate_risk_level',
    'calculate_risk_score',
    'calculate_recommendation',
    'calculate_summary',
]

DEFAULT_RISK_LEVELS = {'critical': 0.95, 'high': 0.85, 'medium': 0.75}
DEFAULT_RECOMMENDATION_THRESHOLDS = {'reject': 85, 'manual_review': 70, 'enhanced_due_diligence': 50}
DEFAULT_SCORE_WEIGHTS = {'max': 0.7, 'mean': 0.3}

ProfileInput = Union[ClientProfile, Dict[str, Any]]


# ============================================
# TERM EXTRACTION AND SCORING
# ============================================

def extract_search_terms(profile: ClientProfile, include_aliases: bool = True,
                         min_length: int = 3) -> List[str]:
    """Candidate name strings for a profile, in a fixed order

    Order: "first last", full name, company name, business name, aliases,
    "last, first", first name, last name. Terms shorter than min_length are
    dropped, whatever their script.
    Terms that normalize to the same string are kept once.
    """
    first = (profile.first_name or '').strip()
    last = (profile.last_name or '').strip()

    raw_terms: List[str] = []
    if first and last:
        raw_terms.append(f"{first} {last}")
    raw_terms.extend([profile.full_name, profile.company_name, profile.business_name])
    if include_aliases:
        raw_terms.extend(profile.aliases)
    if first and last:
        raw_terms.append(f"{last}, {first}")
    raw_terms.extend([first, last])

    terms: List[str] = []
    seen: set = set()
    for term in raw_terms:
        term = (term or '').strip()
        if not term:
            continue
        key = normalize_string(term)
        if len(term) >= min_length and key and key not in seen:
            seen.add(key)
            terms.append(term)
    return terms


def calculate_risk_level(weighted_confidence: float,
                         risk_levels: Optional[Dict[str, float]] = None) -> RiskLevel:
    """Bucket a weighted confidence: >=0.95 CRITICAL, >=0.85 HIGH, >=0.75 MEDIUM, else LOW"""
    levels = risk_levels or DEFAULT_RISK_LEVELS
    if weighted_confidence >= levels['critical']:
        return RiskLevel.CRITICAL
    if weighted_confidence >= levels['high']:
        return RiskLevel.HIGH
    if weighted_confidence >= levels['medium']:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_risk_score(matches: Sequence[WeightedMatch],
                         score_weights: Optional[Dict[str, float]] = None) -> int:
    """round(100 * (0.7 * max + 0.3 * mean)) over weighted confidences, 0 without matches

    Rounding is half-up.
    """
    if not matches:
        return 0
    weights = score_weights or DEFAULT_SCORE_WEIGHTS
    values = [m.weighted_confidence for m in matches]
    blended = weights['max'] * max(values) + weights['mean'] * (sum(values) / len(values))
    return max(0, min(100, math.floor(100 * blended + 0.5)))


def calculate_recommendation(risk_score: int,
                             thresholds: Optional[Dict[str, int]] = None) -> Recommendation:
    """>=85 REJECT, >=70 MANUAL_REVIEW, >=50 ENHANCED_DUE_DILIGENCE, else CLEAR"""
    limits = thresholds or DEFAULT_RECOMMENDATION_THRESHOLDS
    if risk_score >= limits['reject']:
        return Recommendation.REJECT
    if risk_score >= limits['manual_review']:
        return Recommendation.MANUAL_REVIEW
    if risk_score >= limits['enhanced_due_diligence']:
        return Recommendation.ENHANCED_DUE_DILIGENCE
    return Recommendation.CLEAR


def calculate_summary(matches: Sequence[WeightedMatch],
                      config: Optional[ConfigManager] = None) -> ScreeningSummary:
    """Aggregate statistics of a final (sorted, truncated) match list"""
    matching = config.matching if config else None
    risk_score = calculate_risk_score(matches, matching.score_weights if matching else None)
    return ScreeningSummary(
        total_matches=len(matches),
        high_risk_matches=sum(1 for m in matches if m.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)),
        sources=tuple(dict.fromkeys(m.source for m in matches)),
        risk_score=risk_score,
        recommendation=calculate_recommendation(
            risk_score, matching.recommendation_thresholds if matching else None
        ),
    )


def _profile_label(profile: ClientProfile) -> str:
    parts = [profile.full_name, profile.first_name, profile.last_name,
             profile.company_name, profile.business_name]
    return sanitize_for_logging(' / '.join(p for p in parts if p) or '<no name>')


# ============================================
# ENGINE
# ============================================

class SanctionsMatchingEngine:
    """Screens client profiles against every configured watchlist source"""

    def __init__(self,
                 sources: Optional[Iterable[WatchlistSource]] = None,
                 config: Optional[ConfigManager] = None,
                 cache: Optional[SourceCache] = None,
                 executor: Optional[ThreadPoolExecutor] = None):
        """Initialize engine

        Args:
            sources: Watchlist sources (built from configuration if None)
            config: Configuration manager instance
            cache: Source cache (a new one following the data section if None)
            executor: Pool for downloads and CPU-bound scans
        """
        self.config = config or get_config()
        self.sources: List[WatchlistSource] = (
            list(sources) if sources is not None else build_sources(self.config)
        )
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.performance.max_workers,
            thread_name_prefix='screening'
        )
        self.cache = cache or SourceCache(
            max_age=timedelta(hours=self.config.data.staleness_hours),
            retry_interval=timedelta(seconds=self.config.data.retry_interval_seconds),
            download_timeout=self.config.data.download_timeout,
            executor=self._executor,
        )

        logger.info("🔧 Sanctions matching engine initialized:")
        logger.info(f"   - Sources: {', '.join(s.name for s in self.sources) or 'none'}")
        logger.info(f"   - Threshold: {self.config.matching.threshold}")
        logger.info(f"   - Staleness window: {self.cache.max_age}")

    def get_source(self, name: str) -> WatchlistSource:
        for source in self.sources:
            if source.name.lower() == name.lower():
                return source
        raise KeyError(f"Unknown watchlist source: {name}")

    def load_source_file(self, name: str, path: Union[str, Path]) -> int:
        """Seed one source's cache from a local feed file

        Returns:
            Number of entities loaded
        """
        source = self.get_source(name)
        entities = source.load_file(Path(path))
        self.cache.seed(source.name, entities)
        return len(entities)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Screening
    # ------------------------------------------------------------------

    async def screen_entity(self, profile: ProfileInput,
                            threshold: Optional[float] = None,
                            include_aliases: Optional[bool] = None,
                            max_results: Optional[int] = None) -> ScreeningResult:
        """Screen one profile against every source

        Args:
            profile: ClientProfile or a mapping accepted by ClientProfile.from_dict
            threshold: Minimum similarity for a match (config default 0.8)
            include_aliases: Also search the profile's aliases (default True)
            max_results: Cap on returned matches (default 50)

        Returns:
            ScreeningResult; a profile without usable names yields an empty CLEAR result
        """
        if not isinstance(profile, ClientProfile):
            profile = ClientProfile.from_dict(profile or {})

        matching = self.config.matching
        threshold = matching.threshold if threshold is None else threshold
        include_aliases = matching.include_aliases if include_aliases is None else include_aliases
        max_results = matching.max_results if max_results is None else max_results

        terms = extract_search_terms(profile, include_aliases, matching.min_term_length)
        if not terms:
            logger.warning(f"⚠ No usable search terms in profile: {_profile_label(profile)}")
            return ScreeningResult(entity_query=profile)

        outcomes = await asyncio.gather(
            *(self._search_source(source, terms, threshold) for source in self.sources)
        )

        matches: List[WeightedMatch] = []
        failed_sources = []
        for term in terms:
            for source, per_term in zip(self.sources, outcomes):
                if per_term is None:
                    continue
                for candidate in per_term.get(term, ()):
                    matches.append(self._weigh(candidate, source, term))
        for source, per_term in zip(self.sources, outcomes):
            if per_term is None:
                failed_sources.append(source.name)

        # Stable sort: ties keep term order, then source order
        matches.sort(key=lambda m: m.weighted_confidence, reverse=True)
        matches = matches[:max_results]
        summary = calculate_summary(matches, self.config)

        logger.info(f"Screened {_profile_label(profile)}: {summary.total_matches} matches, "
                    f"risk score {summary.risk_score}, {summary.recommendation.value}")

        return ScreeningResult(
            entity_query=profile,
            matches=tuple(matches),
            summary=summary,
            search_terms=tuple(terms),
            failed_sources=tuple(failed_sources),
        )

    def _weigh(self, candidate: MatchCandidate, source: WatchlistSource, term: str) -> WeightedMatch:
        weighted = candidate.confidence * source.weight
        return WeightedMatch(
            candidate=candidate,
            source=source.name,
            search_term=term,
            weighted_confidence=weighted,
            risk_level=calculate_risk_level(weighted, self.config.matching.risk_levels),
        )

    async def _search_source(self, source: WatchlistSource, terms: List[str],
                             threshold: float) -> Optional[Dict[str, List[MatchCandidate]]]:
        """Matches per term for one source, or None if the source failed"""
        try:
            entities = await self.cache.get_entities(source)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(
                self._executor, self._scan, source, terms, threshold, entities
            )
        except SearchError as e:
            logger.warning(f"✗ {source.name} search skipped: {e}")
        except Exception as e:
            logger.warning(f"✗ {source.name} search failed: {e}", exc_info=True)
        return None

    @staticmethod
    def _scan(source: WatchlistSource, terms: List[str], threshold: float,
              entities: Sequence[SanctionedEntity]) -> Dict[str, List[MatchCandidate]]:
        return {term: source.search(term, threshold, entities) for term in terms}

    async def batch_screen(self, profiles: Sequence[ProfileInput],
                           batch_size: Optional[int] = None,
                           isolate_failures: Optional[bool] = None,
                           **options: Any) -> List[ScreeningResult]:
        """Screen many profiles, batch by batch

        Screenings within a batch run concurrently; results keep input order.
        With isolate_failures (default) a failed screening is logged and
        omitted. Without it, any failure drops the results of its whole batch.

        Args:
            profiles: Profiles to screen
            batch_size: Profiles per batch (default 10)
            isolate_failures: Drop only failed items instead of whole batches
            **options: Passed on to screen_entity
        """
        performance = self.config.performance
        batch_size = batch_size or performance.batch_size
        if isolate_failures is None:
            isolate_failures = performance.isolate_batch_failures

        results: List[ScreeningResult] = []
        for start in range(0, len(profiles), batch_size):
            batch = profiles[start:start + batch_size]
            batch_number = start // batch_size + 1
            screenings = [self.screen_entity(profile, **options) for profile in batch]

            if not isolate_failures:
                try:
                    results.extend(await asyncio.gather(*screenings))
                except Exception as e:
                    logger.error(f"✗ Error processing batch {batch_number}: {e}")
                continue

            outcomes = await asyncio.gather(*screenings, return_exceptions=True)
            for index, outcome in enumerate(outcomes, start=start):
                if isinstance(outcome, Exception):
                    logger.error(f"✗ Screening of batch item {index} failed: {outcome}")
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)

        logger.info(f"✓ Batch screening complete: {len(results)}/{len(profiles)} profiles screened")
        return results

    async def test_matching(self, name: str, threshold: Optional[float] = None) -> ScreeningResult:
        """Screen a bare full name (diagnostic)"""
        return await self.screen_entity(ClientProfile(full_name=name), threshold=threshold)

    # ------------------------------------------------------------------
    # Data management
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Entry counts and refresh times per source"""
        stats: Dict[str, Any] = {'services': [], 'totalEntries': 0, 'lastUpdate': None}
        latest = None

        for source in self.sources:
            entry = self.cache.snapshot(source.name)
            total = entry.total_entries if entry else 0
            refreshed = entry.last_refreshed if entry else None
            stats['services'].append({
                'name': source.name,
                'totalEntries': total,
                'lastUpdate': refreshed.isoformat() if refreshed else None,
                'stale': self.cache.is_stale(source.name),
                'lastError': entry.last_error if entry else None,
            })
            stats['totalEntries'] += total
            if refreshed and (latest is None or refreshed > latest):
                latest = refreshed

        stats['lastUpdate'] = latest.isoformat() if latest else None
        return stats

    async def refresh_all_data(self) -> List[Dict[str, Any]]:
        """Force a refresh of every source concurrently

        Returns:
            One ``{service, status, error?}`` record per source, in source order
        """
        async def refresh_one(source: WatchlistSource) -> Dict[str, Any]:
            try:
                await self.cache.refresh(source, force=True)
                return {'service': source.name, 'status': 'success'}
            except Exception as e:
                logger.error(f"✗ Error refreshing {source.name}: {e}")
                return {'service': source.name, 'status': 'error', 'error': str(e)}

        return list(await asyncio.gather(*(refresh_one(s) for s in self.sources)))


# ============================================
# COMMAND LINE
# ============================================

def _print_result(result: ScreeningResult) -> None:
    summary = result.summary
    print(f"\nSearch terms: {', '.join(result.search_terms) or '-'}")
    print(f"Matches found: {summary.total_matches} (high risk: {summary.high_risk_matches})")
    print(f"Risk score: {summary.risk_score}")
    print(f"Recommendation: {summary.recommendation.value}")
    if result.failed_sources:
        print(f"Unavailable sources: {', '.join(result.failed_sources)}")
    for match in result.matches:
        print(f"  [{match.risk_level.value:8}] {match.weighted_confidence:.3f} "
              f"{match.source}:{match.entity.uid} {match.matched_value} "
              f"(term: {match.search_term}{', ' + ', '.join(match.flags) if match.flags else ''})")


async def _run_cli(args: argparse.Namespace, config: ConfigManager) -> int:
    engine = SanctionsMatchingEngine(config=config)
    try:
        for source_name, path in (('OFAC', args.ofac_file), ('UN', args.un_file)):
            if path:
                count = engine.load_source_file(source_name, path)
                print(f"Loaded {count} {source_name} entities from {path}")

        if args.refresh:
            for status in await engine.refresh_all_data():
                marker = '✓' if status['status'] == 'success' else '✗'
                print(f"{marker} {status['service']}: {status.get('error', status['status'])}")

        profile = ClientProfile(
            first_name=args.first,
            last_name=args.last,
            full_name=args.name,
            company_name=args.company,
            aliases=tuple(args.alias or ()),
        )
        result = await engine.screen_entity(profile, threshold=args.threshold, max_results=args.max_results)
    finally:
        engine.shutdown()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        _print_result(result)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Screen a name against OFAC and UN sanctions lists")
    parser.add_argument('--name', help="Full name to screen")
    parser.add_argument('--first', help="First name")
    parser.add_argument('--last', help="Last name")
    parser.add_argument('--company', help="Company name")
    parser.add_argument('--alias', action='append', help="Alias (repeatable)")
    parser.add_argument('--ofac-file', help="Seed OFAC data from a local XML or ZIP file")
    parser.add_argument('--un-file', help="Seed UN data from a local XML file")
    parser.add_argument('--refresh', action='store_true', help="Download every source before screening")
    parser.add_argument('--threshold', type=float, help="Minimum similarity (0-1)")
    parser.add_argument('--max-results', type=int, help="Maximum matches to report")
    parser.add_argument('--json', action='store_true', help="Print the full result as JSON")
    parser.add_argument('--config', help="Path to config.yaml")
    args = parser.parse_args(argv)

    if not any((args.name, args.first, args.last, args.company, args.alias)):
        parser.error("one of --name, --first/--last, --company or --alias is required")

    config = get_config(args.config)
    configure_logging(config)
    print("=== Sanctions Screening Engine ===")
    return asyncio.run(_run_cli(args, config))


if __name__ == "__main__":
    sys.exit(main())
