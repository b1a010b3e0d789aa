"""
Input snapshot of a district's statistics as supplied by the data source.
"""
from datetime import date
from typing import Optional
from pydantic import Field

from .base import CamelModel


class MembershipStatistics(CamelModel):
    total: int = Field(ge=0)


class ClubStatistics(CamelModel):
    total: int = Field(ge=0)
    distinguished: int = Field(ge=0, description="Distinguished clubs (all levels)")
    select_distinguished: Optional[int] = Field(None, ge=0)
    presidents_distinguished: Optional[int] = Field(None, ge=0)


class DistrictStatistics(CamelModel):
    district_id: str = Field(min_length=1)
    as_of_date: date = Field(description="Date the underlying data describes (not processing time)")
    membership: MembershipStatistics
    clubs: ClubStatistics
