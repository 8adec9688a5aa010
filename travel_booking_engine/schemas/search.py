"""
Pydantic schemas for accommodation search and availability.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class SortBy(str, Enum):
    """Ordering of search results."""
    PRICE = "price"
    RATING = "rating"
    DISTANCE = "distance"
    POPULARITY = "popularity"


class GuestsInfo(BaseModel):
    """Party composition."""

    adults: int = Field(2, ge=1, le=16)
    children: int = Field(0, ge=0, le=10)
    rooms: int = Field(1, ge=1, le=8)


class SearchFilters(BaseModel):
    """Optional result filters."""

    price_min: Optional[Decimal] = Field(None, ge=0, description="Minimum price")
    price_max: Optional[Decimal] = Field(None, ge=0, description="Maximum price")
    min_rating: Optional[float] = Field(None, ge=0, le=5, description="Minimum rating score")
    amenities: List[str] = Field(default_factory=list, description="Amenities every result must offer")

    @model_validator(mode="after")
    def validate_price_range(self):
        if self.price_min is not None and self.price_max is not None and self.price_max < self.price_min:
            raise ValueError("price_max must not be lower than price_min")
        return self


class AccommodationSearchRequest(BaseModel):
    """Schema for an accommodation search."""

    destination: str = Field(..., min_length=1, max_length=200)
    check_in: datetime
    check_out: datetime
    guests: GuestsInfo = Field(default_factory=GuestsInfo)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    sort_by: SortBy = SortBy.POPULARITY
    limit: int = Field(20, ge=1, le=50)

    @model_validator(mode="after")
    def validate_dates(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class Accommodation(BaseModel):
    """A single partner offer."""

    id: str
    partner: str = ""
    name: str
    resource_id: Optional[str] = Field(None, description="Engine resource id used for availability")
    price: Decimal
    currency: str = "EUR"
    rating: float = 0.0
    review_count: int = 0
    distance_km: Optional[float] = None
    amenities: List[str] = Field(default_factory=list)
    address: Optional[str] = None

    @property
    def effective_resource_id(self) -> str:
        return self.resource_id or f"{self.partner}:{self.id}"


class SearchResponse(BaseModel):
    """Schema for search results."""

    results: List[Accommodation]
    total: int
    partners_queried: List[str]
    partners_failed: List[str] = Field(default_factory=list)
    cached: bool = False


class AvailabilityResponse(BaseModel):
    """Schema for a read-only availability check."""

    resource_id: str
    check_in: datetime
    check_out: datetime
    available: bool


class PartnerConfig(BaseModel):
    """Connection settings of one partner source."""

    base_url: str
    api_key: Optional[str] = None
    search_path: str = "/search"

    @classmethod
    def from_mapping(cls, values: Dict[str, str]) -> "PartnerConfig":
        return cls(**values)
