"""
Pydantic request/response schemas for FastAPI Sanctions Screening API

Maps the engine's dataclasses (watchlist_models.py) to Pydantic models for API validation.
"""

from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator

NAME_MAX_LENGTH = 200


class AliasEntry(BaseModel):
    """Alias given as an object rather than a plain string."""
    name: Optional[str] = Field(default=None, max_length=NAME_MAX_LENGTH)
    full_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("fullName", "full_name"),
        max_length=NAME_MAX_LENGTH,
    )


class ProfileRequest(BaseModel):
    """Person or organization to screen.

    Accepts snake_case or camelCase field names. A profile without any
    usable name is valid and screens as CLEAR.
    """
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=NAME_MAX_LENGTH)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=NAME_MAX_LENGTH)
    full_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("fullName", "full_name", "name"),
        max_length=NAME_MAX_LENGTH,
    )
    company_name: Optional[str] = Field(default=None, alias="companyName", max_length=NAME_MAX_LENGTH)
    business_name: Optional[str] = Field(default=None, alias="businessName", max_length=NAME_MAX_LENGTH)
    aliases: List[Union[str, AliasEntry]] = Field(
        default_factory=list, max_length=50,
        description="Other known names, as strings or {name, fullName} objects"
    )

    model_config = {"populate_by_name": True}

    @field_validator('aliases')
    @classmethod
    def validate_aliases(cls, v: List[Union[str, AliasEntry]]) -> List[str]:
        """Flatten alias objects to names, reject over-long aliases and drop blank ones."""
        names = []
        for alias in v:
            if isinstance(alias, AliasEntry):
                names.extend(n for n in (alias.name, alias.full_name) if n)
            else:
                names.append(alias)
        for name in names:
            if len(name) > NAME_MAX_LENGTH:
                raise ValueError(f"Alias exceeds {NAME_MAX_LENGTH} characters")
        return [name for name in names if name.strip()]


class ScreeningOptions(BaseModel):
    """Per-request overrides of the matching configuration."""
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Minimum similarity (0-1)")
    include_aliases: Optional[bool] = Field(default=None, alias="includeAliases")
    max_results: Optional[int] = Field(default=None, ge=1, le=500, alias="maxResults")

    model_config = {"populate_by_name": True}


class ScreeningRequest(ProfileRequest, ScreeningOptions):
    """Request schema for screening one profile."""
    model_config = {"populate_by_name": True}


class BatchScreeningRequest(ScreeningOptions):
    """Request schema for screening several profiles."""
    profiles: List[ProfileRequest] = Field(..., min_length=1, max_length=1000)
    batch_size: Optional[int] = Field(default=None, ge=1, le=100, alias="batchSize")

    model_config = {"populate_by_name": True}


class AddressDetail(BaseModel):
    """Address of a sanctioned entity."""
    full_address: str
    city: Optional[str] = None
    country: Optional[str] = None


class AliasDetail(BaseModel):
    """Alias of a sanctioned entity."""
    name: str
    category: Optional[str] = None


class EntityDetail(BaseModel):
    """Sanctioned entity details."""
    uid: str = Field(..., description="Entity ID, unique within its source")
    source: str = Field(..., description="Source list (OFAC, UN)")
    entity_type: str = Field(..., description="INDIVIDUAL or ORGANIZATION")
    name: str = Field(..., description="Primary name")
    aliases: List[AliasDetail] = Field(default_factory=list)
    addresses: List[AddressDetail] = Field(default_factory=list)
    programs: List[str] = Field(default_factory=list, description="Sanctions programs / list types")
    severity: str = "HIGH"
    remarks: Optional[str] = None
    reference_number: Optional[str] = None
    nationalities: List[str] = Field(default_factory=list)
    dates_of_birth: List[str] = Field(default_factory=list)


class MatchDetail(BaseModel):
    """One weighted match."""
    entity: EntityDetail
    matched_field: str = Field(..., description="NAME or ALIAS")
    matched_value: str = Field(..., description="Entity name that matched the search term")
    confidence: float = Field(..., ge=0.0, le=1.0)
    weighted_confidence: float = Field(..., ge=0.0)
    risk_level: str = Field(..., description="CRITICAL, HIGH, MEDIUM or LOW")
    source: str
    search_term: str
    flags: List[str] = Field(default_factory=list, description="Explanatory flags")


class SummaryDetail(BaseModel):
    """Aggregate view of the matches."""
    total_matches: int = Field(..., ge=0)
    high_risk_matches: int = Field(..., ge=0)
    sources: List[str] = Field(default_factory=list)
    risk_score: int = Field(..., ge=0, le=100)
    recommendation: str = Field(
        ...,
        description="Recommendation: CLEAR, ENHANCED_DUE_DILIGENCE, MANUAL_REVIEW, REJECT"
    )


class ScreeningResponse(BaseModel):
    """Response schema for one screening."""
    screening_id: str = Field(..., description="Unique screening identifier (UUID)")
    screening_date: str = Field(..., description="Screening timestamp (ISO 8601)")
    search_terms: List[str] = Field(default_factory=list)
    matches: List[MatchDetail] = Field(default_factory=list)
    summary: SummaryDetail
    failed_sources: List[str] = Field(default_factory=list, description="Sources that could not be searched")
    processing_time_ms: int = Field(..., ge=0, description="Processing time in milliseconds")
    algorithm_version: str = Field(..., description="Algorithm version used")


class BatchScreeningResponse(BaseModel):
    """Response schema for batch screening."""
    screening_id: str = Field(..., description="Batch screening job identifier")
    total_submitted: int = Field(..., ge=0)
    total_processed: int = Field(..., ge=0, description="Profiles with a result")
    results: List[ScreeningResponse] = Field(default_factory=list)
    processing_time_ms: int = Field(..., ge=0)


class ServiceStats(BaseModel):
    """Cache state of one source."""
    name: str
    total_entries: int = Field(..., ge=0)
    last_update: Optional[str] = None
    stale: bool = True
    last_error: Optional[str] = None


class StatsResponse(BaseModel):
    """Response schema for the statistics endpoint."""
    services: List[ServiceStats] = Field(default_factory=list)
    total_entries: int = Field(..., ge=0)
    last_update: Optional[str] = None


class RefreshStatus(BaseModel):
    """Refresh outcome of one source."""
    service: str
    status: str = Field(..., description="success or error")
    error: Optional[str] = None


class DataRefreshResponse(BaseModel):
    """Response schema for data refresh endpoint."""
    success: bool = Field(..., description="Whether every source refreshed")
    results: List[RefreshStatus] = Field(default_factory=list)
    total_entities: int = Field(..., ge=0, description="Total entities after refresh")
    processing_time_ms: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="healthy, or degraded when a source has no data")
    entities_loaded: int = Field(..., ge=0, description="Number of entities loaded")
    sources: List[ServiceStats] = Field(default_factory=list)
    algorithm_version: str = Field(..., description="Algorithm version")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
