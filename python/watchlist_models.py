"""
Watchlist Data Model
Canonical types shared by ingestion, the source cache and the matching engine

Features:
- SanctionedEntity: one listed party, normalized across OFAC and UN feeds
- MatchCandidate / WeightedMatch: raw and source-weighted search hits
- ScreeningResult: aggregated verdict for one client profile
- ClientProfile: screening input, built from snake_case or camelCase dicts

Every type is immutable. An entity set is replaced wholesale on refresh and a
screening result is never edited after it is built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from typing import Dict, List, Optional, Any, Tuple


# ============================================
# ENUMS
# ============================================

class EntityType(str, PyEnum):
    """Type of sanctioned entity"""
    INDIVIDUAL = "INDIVIDUAL"
    ORGANIZATION = "ORGANIZATION"


class MatchedField(str, PyEnum):
    """Which entity name produced a match"""
    NAME = "NAME"
    ALIAS = "ALIAS"


class RiskLevel(str, PyEnum):
    """Per-match risk bucket"""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Recommendation(str, PyEnum):
    """Screening-level verdict"""
    CLEAR = "CLEAR"
    ENHANCED_DUE_DILIGENCE = "ENHANCED_DUE_DILIGENCE"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    REJECT = "REJECT"


class Severity(str, PyEnum):
    """Severity of a listing. All current sources are high severity."""
    HIGH = "HIGH"


# Explanatory flags attached to a match
FLAG_EXACT_MATCH = "EXACT_MATCH"
FLAG_ALIAS_MATCH = "ALIAS_MATCH"
FLAG_PHONETIC_MATCH = "PHONETIC_MATCH"
FLAG_ROMANIZATION_MATCH = "ROMANIZATION_MATCH"


# ============================================
# ENTITIES
# ============================================

@dataclass(frozen=True)
class EntityAlias:
    """Alternative name of a listed party"""
    name: str
    category: Optional[str] = None  # OFAC 'strong'/'weak', UN QUALITY 'Good'/'Low'
    alias_type: Optional[str] = None  # OFAC 'a.k.a.', 'f.k.a.', ...

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'category': self.category, 'type': self.alias_type}


@dataclass(frozen=True)
class Address:
    """Structured address plus its display string"""
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    full_address: str = ''

    @classmethod
    def build(cls, **parts: Optional[str]) -> 'Address':
        """Create an address whose display string joins the non-empty parts"""
        order = ('address_line1', 'address_line2', 'city', 'state_province', 'postal_code', 'country')
        full = ', '.join(parts[key] for key in order if parts.get(key))
        return cls(full_address=full, **parts)

    def is_empty(self) -> bool:
        return not self.full_address

    def to_dict(self) -> Dict[str, Any]:
        return {
            'addressLine1': self.address_line1,
            'addressLine2': self.address_line2,
            'city': self.city,
            'stateProvince': self.state_province,
            'postalCode': self.postal_code,
            'country': self.country,
            'fullAddress': self.full_address
        }


@dataclass(frozen=True)
class SanctionedEntity:
    """One listed party in canonical form

    ``uid`` is unique within ``source``. Alias, address and program tuples
    may be empty.
    """
    uid: str
    source: str
    entity_type: EntityType
    primary_name: str
    aliases: Tuple[EntityAlias, ...] = ()
    addresses: Tuple[Address, ...] = ()
    programs: Tuple[str, ...] = ()
    severity: Severity = Severity.HIGH
    last_updated: datetime = field(default_factory=datetime.now)

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    title: Optional[str] = None
    remarks: Optional[str] = None

    # UN specific
    reference_number: Optional[str] = None
    regime_code: Optional[str] = None
    list_type: Optional[str] = None
    listed_on: Optional[str] = None
    nationalities: Tuple[str, ...] = ()
    dates_of_birth: Tuple[str, ...] = ()

    @property
    def all_names(self) -> List[str]:
        """Primary name followed by every alias name"""
        return [self.primary_name] + [alias.name for alias in self.aliases]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uid': self.uid,
            'source': self.source,
            'entityType': self.entity_type.value,
            'name': self.primary_name,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'title': self.title,
            'aliases': [alias.to_dict() for alias in self.aliases],
            'addresses': [address.to_dict() for address in self.addresses],
            'programs': list(self.programs),
            'severity': self.severity.value,
            'remarks': self.remarks,
            'referenceNumber': self.reference_number,
            'regimeCode': self.regime_code,
            'listType': self.list_type,
            'listedOn': self.listed_on,
            'nationalities': list(self.nationalities),
            'datesOfBirth': list(self.dates_of_birth),
            'lastUpdated': self.last_updated.isoformat()
        }


# ============================================
# MATCHES
# ============================================

@dataclass(frozen=True)
class MatchCandidate:
    """Best hit of one search term against one entity

    ``confidence`` is the composite similarity between ``matched_value``
    and the search term.
    """
    entity: SanctionedEntity
    matched_field: MatchedField
    matched_value: str
    confidence: float
    flags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WeightedMatch:
    """A MatchCandidate weighted by its source and classified by risk"""
    candidate: MatchCandidate
    source: str
    search_term: str
    weighted_confidence: float
    risk_level: RiskLevel

    @property
    def entity(self) -> SanctionedEntity:
        return self.candidate.entity

    @property
    def matched_field(self) -> MatchedField:
        return self.candidate.matched_field

    @property
    def matched_value(self) -> str:
        return self.candidate.matched_value

    @property
    def confidence(self) -> float:
        return self.candidate.confidence

    @property
    def flags(self) -> Tuple[str, ...]:
        return self.candidate.flags

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity.to_dict(),
            'matchedField': self.matched_field.value,
            'matchedValue': self.matched_value,
            'confidence': round(self.confidence, 4),
            'source': self.source,
            'searchTerm': self.search_term,
            'weightedConfidence': round(self.weighted_confidence, 4),
            'riskLevel': self.risk_level.value,
            'flags': list(self.flags)
        }


# ============================================
# SCREENING INPUT AND RESULT
# ============================================

@dataclass(frozen=True)
class ClientProfile:
    """Person or organization to screen"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    company_name: Optional[str] = None
    business_name: Optional[str] = None
    aliases: Tuple[str, ...] = ()

    _FIELD_KEYS = {
        'first_name': ('first_name', 'firstName'),
        'last_name': ('last_name', 'lastName'),
        'full_name': ('full_name', 'fullName', 'name'),
        'company_name': ('company_name', 'companyName'),
        'business_name': ('business_name', 'businessName'),
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientProfile':
        """Build a profile from a snake_case or camelCase mapping

        Aliases may be plain strings or mappings with ``name`` and/or
        ``fullName``; both values of a mapping are kept.
        """
        values: Dict[str, Any] = {}
        for attr, keys in cls._FIELD_KEYS.items():
            for key in keys:
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    values[attr] = value.strip()
                    break

        aliases: List[str] = []
        for alias in data.get('aliases') or []:
            if isinstance(alias, str):
                aliases.append(alias)
            elif isinstance(alias, dict):
                for key in ('name', 'fullName', 'full_name'):
                    if alias.get(key):
                        aliases.append(str(alias[key]))
        values['aliases'] = tuple(a.strip() for a in aliases if a and a.strip())

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'firstName': self.first_name,
            'lastName': self.last_name,
            'fullName': self.full_name,
            'companyName': self.company_name,
            'businessName': self.business_name,
            'aliases': list(self.aliases)
        }


@dataclass(frozen=True)
class ScreeningSummary:
    """Aggregate view of the matches of one screening"""
    total_matches: int = 0
    high_risk_matches: int = 0
    sources: Tuple[str, ...] = ()
    risk_score: int = 0
    recommendation: Recommendation = Recommendation.CLEAR

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalMatches': self.total_matches,
            'highRiskMatches': self.high_risk_matches,
            'sources': list(self.sources),
            'riskScore': self.risk_score,
            'recommendation': self.recommendation.value
        }


@dataclass(frozen=True)
class ScreeningResult:
    """Verdict for one client profile

    ``matches`` is sorted by descending weighted confidence and capped at
    the requested maximum. ``failed_sources`` lists sources that could not
    be searched for this call.
    """
    entity_query: ClientProfile
    matches: Tuple[WeightedMatch, ...] = ()
    summary: ScreeningSummary = field(default_factory=ScreeningSummary)
    search_terms: Tuple[str, ...] = ()
    failed_sources: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity_query.to_dict(),
            'matches': [match.to_dict() for match in self.matches],
            'summary': self.summary.to_dict(),
            'searchTerms': list(self.search_terms),
            'failedSources': list(self.failed_sources),
            'timestamp': self.timestamp.isoformat()
        }
