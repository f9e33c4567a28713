"""
Watchlist Sources v3.0
Downloads and parses OFAC SDN and UN Consolidated sanctions lists into the
canonical SanctionedEntity model, and searches a loaded entity set by name

Features:
- Uniform WatchlistSource interface (fetch, parse, load_file, search)
- OFAC classic SDN XML, SDN enhanced XML and ZIP archives of either
- UN Consolidated List individuals and entities with regime codes
- Dynamic namespace handling
- Per-record failures skipped and logged; whole-document failures raised
- Cross-script search through Chinese romanization

SECURITY: All XML parsing uses secure defaults to prevent XXE attacks.
"""

import io
import re
import hashlib
import logging
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Any, Tuple, Iterable, Callable

import requests
from lxml import etree

from chinese_names import contains_chinese, generate_romanizations, best_romanization
from config_manager import ConfigManager, SourceConfig
from phonetic import phonetic_match
from similarity import calculate_similarity_metrics, normalize_string
from watchlist_models import (
    Address,
    EntityAlias,
    EntityType,
    MatchCandidate,
    MatchedField,
    SanctionedEntity,
    FLAG_ALIAS_MATCH,
    FLAG_EXACT_MATCH,
    FLAG_PHONETIC_MATCH,
    FLAG_ROMANIZATION_MATCH,
)
from xml_utils import (
    secure_parse,
    extract_namespace,
    local_name,
    get_text_from_element,
    get_all_text,
    sanitize_for_logging,
)

logger = logging.getLogger(__name__)

UN_REFERENCE_PATTERN = re.compile(r'^([A-Z]{2})([ie])\.(\d+)$')
ZIP_MAGIC = b'PK\x03\x04'
PROGRESS_INTERVAL = 5000


class FetchError(Exception):
    """Raised when a feed cannot be downloaded (network error, timeout, non-2xx)"""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class ParseError(Exception):
    """Raised when a feed document as a whole cannot be parsed"""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


@lru_cache(maxsize=4096)
def _romanizations_of(name: str) -> Tuple[str, ...]:
    return tuple(generate_romanizations(name))


class WatchlistSource(ABC):
    """One sanctions list: how to download it, parse it and search it"""

    name: str = ''

    def __init__(self, url: str, weight: float = 1.0):
        """Initialize source

        Args:
            url: Absolute URL of the feed document
            weight: Multiplier applied to match confidence for this source
        """
        self.url = url
        self.weight = weight

    def __repr__(self) -> str:
        return f"{type(self).__name__}(url={self.url!r}, weight={self.weight})"

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def fetch(self, timeout: float = 120) -> bytes:
        """Download the raw feed document

        Args:
            timeout: Seconds allowed for connect and for each read

        Returns:
            Response body

        Raises:
            FetchError: On network failure, timeout or non-2xx status
        """
        logger.info(f"Downloading {self.name} list from {self.url}")
        try:
            response = requests.get(self.url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"✗ Failed to download {self.name} list: {e}")
            raise FetchError(f"Failed to download {self.name} list: {e}", source=self.name) from e

        content = response.content
        size_mb = len(content) / 1024 / 1024
        logger.info(f"✓ Downloaded {self.name} list ({size_mb:.1f} MB)")
        logger.info(f"  File hash (SHA256): {self._calculate_hash(content)[:16]}...")
        return content

    def load_file(self, path: Path) -> List[SanctionedEntity]:
        """Parse a locally stored copy of the feed

        Raises:
            ParseError: If the file is missing or cannot be parsed
        """
        path = Path(path)
        logger.info(f"Loading {self.name} list from {path}")
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ParseError(f"Cannot read {path}: {e}", source=self.name) from e
        return self.parse(raw)

    @abstractmethod
    def parse(self, raw: bytes) -> List[SanctionedEntity]:
        """Parse a raw feed document into canonical entities

        Raises:
            ParseError: If the document as a whole is unusable
        """

    def _calculate_hash(self, content: bytes) -> str:
        """Calculate SHA256 hash of a downloaded document"""
        return hashlib.sha256(content).hexdigest()

    def _parse_root(self, raw: bytes) -> Any:
        try:
            return secure_parse(raw)
        except (etree.XMLSyntaxError, ValueError) as e:
            logger.error(f"✗ Error parsing {self.name} XML: {e}")
            raise ParseError(f"Malformed {self.name} XML: {e}", source=self.name) from e

    def _parse_records(self, elements: Iterable[Any],
                       parse_one: Callable[[Any], Optional[SanctionedEntity]]) -> List[SanctionedEntity]:
        """Apply parse_one to every record element, skipping failures

        A record that raises is logged and skipped. Records whose uid was
        already seen are dropped so uids stay unique within the source.
        """
        entities: List[SanctionedEntity] = []
        seen: set = set()
        skipped = 0

        for count, elem in enumerate(elements, start=1):
            try:
                entity = parse_one(elem)
            except Exception as e:
                record_id = elem.get('uid') or elem.get('id') or elem.get('dataid') or 'unknown'
                logger.warning(f"Error parsing {self.name} record {record_id}: {e}")
                skipped += 1
                continue

            if entity is None:
                skipped += 1
            elif entity.uid in seen:
                logger.warning(f"Duplicate {self.name} record {entity.uid} ignored")
                skipped += 1
            else:
                seen.add(entity.uid)
                entities.append(entity)

            if count % PROGRESS_INTERVAL == 0:
                logger.info(f"  Parsed {count} {self.name} records...")

        if skipped:
            logger.warning(f"⚠ Skipped {skipped} unusable {self.name} records")
        return entities

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, term: str, threshold: float,
               entities: Iterable[SanctionedEntity]) -> List[MatchCandidate]:
        """Best name or alias match of term against each entity

        Args:
            term: Search term (Latin or Chinese script)
            threshold: Minimum confidence to keep
            entities: Entity set to scan, normally this source's cached list

        Returns:
            At most one MatchCandidate per entity, sorted by descending confidence
        """
        if not term or not term.strip():
            return []

        scorer = _TermScorer(term)
        candidates = []
        for entity in entities:
            candidate = scorer.best_match(entity, threshold)
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        logger.debug(f"{self.name}: {len(candidates)} matches for '{sanitize_for_logging(term)}'")
        return candidates


class _TermScorer:
    """Scores one search term against entity names

    Romanizations of a Chinese-script term are generated once per search.
    """

    def __init__(self, term: str):
        self.term = term
        self.normalized = normalize_string(term)
        self.is_chinese = contains_chinese(term)
        self.romanizations: Tuple[str, ...] = _romanizations_of(term) if self.is_chinese else ()

    def score(self, name: str) -> Tuple[float, bool]:
        """Composite confidence and whether transliteration was needed"""
        if not name:
            return 0.0, False
        name_is_chinese = contains_chinese(name)

        if self.is_chinese and not name_is_chinese:
            if not self.romanizations:
                return 0.0, False
            confidence, _, _ = best_romanization(name, self.romanizations)
            return confidence, True

        if name_is_chinese and not self.is_chinese:
            romanizations = _romanizations_of(name)
            if not romanizations:
                return 0.0, False
            confidence, _, _ = best_romanization(self.term, romanizations)
            return confidence, True

        return calculate_similarity_metrics(self.normalized, name).composite, False

    def best_match(self, entity: SanctionedEntity, threshold: float = 0.0) -> Optional[MatchCandidate]:
        """Best-scoring name or alias of entity, or None below threshold

        Flags are only computed for a name that reaches the threshold.
        """
        best: Optional[Tuple[float, bool, MatchedField, str]] = None
        names = [(MatchedField.NAME, entity.primary_name)]
        names.extend((MatchedField.ALIAS, alias.name) for alias in entity.aliases)

        for matched_field, value in names:
            confidence, cross_script = self.score(value)
            if best is None or confidence > best[0]:
                best = (confidence, cross_script, matched_field, value)
            if confidence >= 1.0:
                break

        if best is None or best[0] <= 0.0 or best[0] < threshold:
            return None

        confidence, cross_script, matched_field, value = best
        flags = []
        if confidence >= 1.0:
            flags.append(FLAG_EXACT_MATCH)
        if matched_field is MatchedField.ALIAS:
            flags.append(FLAG_ALIAS_MATCH)
        if cross_script:
            flags.append(FLAG_ROMANIZATION_MATCH)
        elif phonetic_match(self.term, value, 'double_metaphone').match:
            flags.append(FLAG_PHONETIC_MATCH)

        return MatchCandidate(
            entity=entity,
            matched_field=matched_field,
            matched_value=value,
            confidence=min(1.0, confidence),
            flags=tuple(flags),
        )


# ============================================
# OFAC
# ============================================

class OFACSource(WatchlistSource):
    """OFAC Specially Designated Nationals list

    Accepts the classic SDN XML (``sdnList``/``sdnEntry``), the SDN
    enhanced XML (``sanctionsData``/``entity``) and ZIP archives holding
    either one.
    """

    name = 'OFAC'

    def parse(self, raw: bytes) -> List[SanctionedEntity]:
        raw = self._unzip(raw)
        root = self._parse_root(raw)
        ns = extract_namespace(root)
        root_name = local_name(root)
        parsed_at = datetime.now()

        if root_name == 'sdnList':
            logger.info("Parsing OFAC classic SDN XML")
            entities = self._parse_records(
                root.iter(f'{ns}sdnEntry'),
                lambda elem: self._parse_sdn_entry(elem, ns, parsed_at)
            )
        elif root_name == 'sanctionsData':
            logger.info(f"Parsing OFAC enhanced XML (namespace: {ns or 'none'})")
            entities = self._parse_records(
                root.iter(f'{ns}entity'),
                lambda elem: self._parse_enhanced_entity(elem, ns, parsed_at)
            )
        else:
            raise ParseError(f"Unexpected OFAC root element: {root_name}", source=self.name)

        individuals = sum(1 for e in entities if e.entity_type is EntityType.INDIVIDUAL)
        logger.info(f"✓ Parsed {len(entities)} OFAC entities "
                    f"({individuals} individuals, {len(entities) - individuals} organizations)")
        return entities

    def _unzip(self, raw: bytes) -> bytes:
        """Extract the first XML member when raw is a ZIP archive"""
        if not raw.startswith(ZIP_MAGIC):
            return raw
        try:
            with zipfile.ZipFile(io.BytesIO(raw)) as zf:
                xml_files = [n for n in zf.namelist() if n.upper().endswith('.XML')]
                if not xml_files:
                    raise ParseError("No XML file found in OFAC ZIP archive", source=self.name)
                logger.info(f"✓ Extracted OFAC XML: {xml_files[0]}")
                return zf.read(xml_files[0])
        except zipfile.BadZipFile as e:
            raise ParseError(f"Invalid OFAC ZIP archive: {e}", source=self.name) from e

    @staticmethod
    def _entity_type(value: Optional[str]) -> EntityType:
        if value and value.strip().lower() == 'individual':
            return EntityType.INDIVIDUAL
        return EntityType.ORGANIZATION

    @staticmethod
    def _join_name(first: Optional[str], last: Optional[str]) -> str:
        return ' '.join(part for part in (first, last) if part).strip()

    def _parse_sdn_entry(self, elem: Any, ns: str, parsed_at: datetime) -> Optional[SanctionedEntity]:
        """Parse a classic sdnEntry element"""
        uid = get_text_from_element(elem, f'{ns}uid') or elem.get('uid')
        first_name = get_text_from_element(elem, f'{ns}firstName')
        last_name = get_text_from_element(elem, f'{ns}lastName')
        primary_name = self._join_name(first_name, last_name)
        if not uid or not primary_name:
            return None

        aliases = []
        for aka in elem.iter(f'{ns}aka'):
            alias_name = self._join_name(
                get_text_from_element(aka, f'{ns}firstName'),
                get_text_from_element(aka, f'{ns}lastName')
            )
            if alias_name:
                aliases.append(EntityAlias(
                    name=alias_name,
                    category=get_text_from_element(aka, f'{ns}category') or aka.get('category'),
                    alias_type=get_text_from_element(aka, f'{ns}type') or aka.get('type')
                ))

        addresses = []
        for addr in elem.iter(f'{ns}address'):
            line2 = ', '.join(get_all_text(addr, f'{ns}address2') + get_all_text(addr, f'{ns}address3'))
            address = Address.build(
                address_line1=get_text_from_element(addr, f'{ns}address1'),
                address_line2=line2 or None,
                city=get_text_from_element(addr, f'{ns}city'),
                state_province=get_text_from_element(addr, f'{ns}stateOrProvince'),
                postal_code=get_text_from_element(addr, f'{ns}postalCode'),
                country=get_text_from_element(addr, f'{ns}country')
            )
            if not address.is_empty():
                addresses.append(address)

        nationalities = [
            country for nat in elem.iter(f'{ns}nationality')
            for country in get_all_text(nat, f'{ns}country')
        ]
        dates_of_birth = [
            dob for item in elem.iter(f'{ns}dateOfBirthItem')
            for dob in get_all_text(item, f'{ns}dateOfBirth')
        ]

        return SanctionedEntity(
            uid=uid,
            source=self.name,
            entity_type=self._entity_type(get_text_from_element(elem, f'{ns}sdnType')),
            primary_name=primary_name,
            aliases=tuple(aliases),
            addresses=tuple(addresses),
            programs=tuple(prog.text.strip() for prog in elem.iter(f'{ns}program') if prog.text and prog.text.strip()),
            last_updated=parsed_at,
            first_name=first_name,
            last_name=last_name,
            title=get_text_from_element(elem, f'{ns}title'),
            remarks=get_text_from_element(elem, f'{ns}remarks'),
            nationalities=tuple(dict.fromkeys(nationalities)),
            dates_of_birth=tuple(dates_of_birth),
        )

    def _parse_enhanced_entity(self, elem: Any, ns: str, parsed_at: datetime) -> Optional[SanctionedEntity]:
        """Parse an enhanced-format entity element

        The first translation of the primary name is the primary name. Every
        other translation (other scripts included) and every other name
        becomes an alias.
        """
        uid = elem.get('id')
        if not uid:
            return None

        general = elem.find(f'{ns}generalInfo')
        info = general if general is not None else elem
        entity_type = self._entity_type(
            get_text_from_element(info, f'{ns}entityType') or get_text_from_element(elem, f'{ns}entityType')
        )

        primary_name = None
        first_name = None
        last_name = None
        aliases: Dict[str, EntityAlias] = {}

        for name_elem in elem.findall(f'{ns}names/{ns}name'):
            is_primary = (get_text_from_element(name_elem, f'{ns}isPrimary') or '').lower() == 'true'
            is_low_quality = (get_text_from_element(name_elem, f'{ns}isLowQuality') or '').lower() == 'true'
            alias_type = get_text_from_element(name_elem, f'{ns}aliasType')

            for translation in name_elem.iter(f'{ns}translation'):
                full_name = get_text_from_element(translation, f'{ns}formattedFullName')
                if not full_name:
                    continue
                if is_primary and primary_name is None:
                    primary_name = full_name
                    first_name = get_text_from_element(translation, f'{ns}formattedFirstName')
                    last_name = get_text_from_element(translation, f'{ns}formattedLastName')
                    continue
                if full_name not in aliases:
                    aliases[full_name] = EntityAlias(
                        name=full_name,
                        category='weak' if is_low_quality else 'strong',
                        alias_type=alias_type
                    )

        if primary_name is None and aliases:
            # No name flagged primary: promote the first one
            first_key = next(iter(aliases))
            primary_name = aliases.pop(first_key).name
        if not primary_name:
            return None
        aliases.pop(primary_name, None)

        addresses = []
        for addr in elem.findall(f'{ns}addresses/{ns}address'):
            address = self._parse_enhanced_address(addr, ns)
            if not address.is_empty():
                addresses.append(address)

        programs = get_all_text(elem, f'.//{ns}sanctionsProgram')

        return SanctionedEntity(
            uid=uid,
            source=self.name,
            entity_type=entity_type,
            primary_name=primary_name,
            aliases=tuple(aliases.values()),
            addresses=tuple(addresses),
            programs=tuple(dict.fromkeys(programs)),
            last_updated=parsed_at,
            first_name=first_name,
            last_name=last_name,
            title=get_text_from_element(info, f'{ns}title'),
            remarks=get_text_from_element(info, f'{ns}remarks') or get_text_from_element(elem, f'{ns}remarks'),
        )

    def _parse_enhanced_address(self, elem: Any, ns: str) -> Address:
        """Parse an address given as typed addressParts or as plain child elements"""
        parts = {
            'address_line1': get_text_from_element(elem, f'{ns}addressLine1'),
            'address_line2': get_text_from_element(elem, f'{ns}addressLine2'),
            'city': get_text_from_element(elem, f'{ns}city'),
            'state_province': get_text_from_element(elem, f'{ns}stateProvince'),
            'postal_code': get_text_from_element(elem, f'{ns}postalCode'),
            'country': get_text_from_element(elem, f'{ns}country'),
        }
        part_keys = {
            'ADDRESS1': 'address_line1',
            'ADDRESS2': 'address_line2',
            'CITY': 'city',
            'STATE/PROVINCE': 'state_province',
            'POSTAL CODE': 'postal_code',
        }
        for part in elem.iter(f'{ns}addressPart'):
            key = part_keys.get((get_text_from_element(part, f'{ns}type') or '').upper())
            value = get_text_from_element(part, f'{ns}value')
            if key and value and not parts[key]:
                parts[key] = value
        return Address.build(**parts)


# ============================================
# UN
# ============================================

class UNSource(WatchlistSource):
    """UN Security Council Consolidated List"""

    name = 'UN'

    def __init__(self, url: str, weight: float = 1.0):
        super().__init__(url, weight)
        # Regime codes seen so far, logged once when first encountered
        self._discovered_regimes: set = set()

    def parse(self, raw: bytes) -> List[SanctionedEntity]:
        root = self._parse_root(raw)
        root_name = local_name(root)
        if root_name != 'CONSOLIDATED_LIST':
            raise ParseError(f"Unexpected UN root element: {root_name}", source=self.name)

        parsed_at = datetime.now()
        individuals = self._parse_records(
            root.iter('INDIVIDUAL'),
            lambda elem: self._parse_un_record(elem, EntityType.INDIVIDUAL, parsed_at)
        )
        organizations = self._parse_records(
            root.iter('ENTITY'),
            lambda elem: self._parse_un_record(elem, EntityType.ORGANIZATION, parsed_at)
        )

        logger.info(f"✓ Parsed {len(individuals) + len(organizations)} UN entities "
                    f"({len(individuals)} individuals, {len(organizations)} organizations)")
        return individuals + organizations

    def _parse_un_record(self, elem: Any, entity_type: EntityType,
                         parsed_at: datetime) -> Optional[SanctionedEntity]:
        """Parse an INDIVIDUAL or ENTITY element"""
        dataid = get_text_from_element(elem, 'DATAID') or elem.get('dataid')
        if not dataid:
            return None

        first_name = get_text_from_element(elem, 'FIRST_NAME')
        other_names = [
            n for n in (
                get_text_from_element(elem, 'SECOND_NAME'),
                get_text_from_element(elem, 'THIRD_NAME'),
                get_text_from_element(elem, 'FOURTH_NAME'),
            ) if n
        ]
        if entity_type is EntityType.INDIVIDUAL:
            primary_name = ' '.join(([first_name] if first_name else []) + other_names)
            last_name = ' '.join(other_names) or None
        else:
            # Entity name is in FIRST_NAME
            primary_name = first_name or ''
            last_name = None
        if not primary_name:
            return None

        prefix = 'INDIVIDUAL' if entity_type is EntityType.INDIVIDUAL else 'ENTITY'
        aliases = []
        for alias in elem.iter(f'{prefix}_ALIAS'):
            alias_name = get_text_from_element(alias, 'ALIAS_NAME')
            if alias_name and alias_name != primary_name:
                aliases.append(EntityAlias(
                    name=alias_name,
                    category=get_text_from_element(alias, 'QUALITY'),
                    alias_type='alias'
                ))
        original_script = get_text_from_element(elem, 'NAME_ORIGINAL_SCRIPT')
        if original_script and original_script != primary_name:
            aliases.append(EntityAlias(name=original_script, category='original_script',
                                       alias_type='original_script'))

        addresses = []
        for addr in elem.iter(f'{prefix}_ADDRESS'):
            address = Address.build(
                address_line1=get_text_from_element(addr, 'STREET'),
                city=get_text_from_element(addr, 'CITY'),
                state_province=get_text_from_element(addr, 'STATE_PROVINCE'),
                postal_code=get_text_from_element(addr, 'ZIP_CODE'),
                country=get_text_from_element(addr, 'COUNTRY')
            )
            if not address.is_empty():
                addresses.append(address)

        list_type = get_text_from_element(elem, 'UN_LIST_TYPE')
        reference_number = get_text_from_element(elem, 'REFERENCE_NUMBER')

        return SanctionedEntity(
            uid=dataid,
            source=self.name,
            entity_type=entity_type,
            primary_name=primary_name,
            aliases=tuple(aliases),
            addresses=tuple(addresses),
            programs=(list_type,) if list_type else (),
            last_updated=parsed_at,
            first_name=first_name if entity_type is EntityType.INDIVIDUAL else None,
            last_name=last_name,
            remarks=get_text_from_element(elem, 'COMMENTS1'),
            reference_number=reference_number,
            regime_code=self._parse_un_reference(reference_number),
            list_type=list_type,
            listed_on=get_text_from_element(elem, 'LISTED_ON'),
            nationalities=tuple(dict.fromkeys(get_all_text(elem, 'NATIONALITY/VALUE'))),
            dates_of_birth=tuple(self._parse_dates_of_birth(elem)),
        )

    @staticmethod
    def _parse_dates_of_birth(elem: Any) -> List[str]:
        dates = []
        for dob in elem.iter('INDIVIDUAL_DATE_OF_BIRTH'):
            value = get_text_from_element(dob, 'DATE') or get_text_from_element(dob, 'YEAR')
            if not value:
                from_year = get_text_from_element(dob, 'FROM_YEAR')
                to_year = get_text_from_element(dob, 'TO_YEAR')
                if from_year and to_year:
                    value = f"{from_year}-{to_year}"
            if value:
                dates.append(value)
        return dates

    def _parse_un_reference(self, reference_number: Optional[str]) -> Optional[str]:
        """Regime code of a UN reference number

        Reference numbers look like ``QDi.001`` or ``KPe.015``: a two-letter
        regime code, ``i`` for individuals or ``e`` for entities, and a
        sequence number.

        Returns:
            Regime code (e.g. 'QD') or None when the format is not recognized
        """
        match = UN_REFERENCE_PATTERN.match(reference_number or '')
        if not match:
            return None
        regime = match.group(1)
        if regime not in self._discovered_regimes:
            self._discovered_regimes.add(regime)
            logger.info(f"Discovered UN regime code: {regime} (from reference: {reference_number})")
        return regime


SOURCE_CLASSES = {
    'ofac': OFACSource,
    'un': UNSource,
}


def build_sources(config: ConfigManager) -> List[WatchlistSource]:
    """Instantiate every enabled source from configuration"""
    sources = []
    for key, source_cfg in config.sources.items():
        if not source_cfg.enabled:
            logger.info(f"Source {source_cfg.name} disabled in configuration")
            continue
        sources.append(_build_source(key, source_cfg))
    return sources


def _build_source(key: str, source_cfg: SourceConfig) -> WatchlistSource:
    source_class = SOURCE_CLASSES[key]
    return source_class(url=source_cfg.url, weight=source_cfg.weight)
