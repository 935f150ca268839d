from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class GeometryDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    diameter: Optional[float] = None
    shape: Optional[str] = None
    material: Optional[str] = None


class CharacteristicsDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hardness: Optional[str] = None
    coating: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    specifications: Optional[str] = None


class CuttingParametersDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    speed: Optional[float] = None
    feed: Optional[float] = None
    depth: Optional[float] = None
    notes: Optional[str] = None


class CatalogInfoDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    manufacturer: Optional[str] = None
    catalogNumber: Optional[str] = None
    source: Optional[Literal["manufacturer", "experience"]] = None
    reference: Optional[str] = None


class ToolCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productCode: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    status: Optional[Literal["new", "old", "usable", "unusable"]] = None
    geometry: Optional[GeometryDto] = None
    characteristics: Optional[CharacteristicsDto] = None
    cuttingParameters: Optional[CuttingParametersDto] = None
    catalogInfo: Optional[CatalogInfoDto] = None


class ToolUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productCode: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    status: Optional[Literal["new", "old", "usable", "unusable"]] = None
    geometry: Optional[GeometryDto] = None
    characteristics: Optional[CharacteristicsDto] = None
    cuttingParameters: Optional[CuttingParametersDto] = None
    catalogInfo: Optional[CatalogInfoDto] = None
    updateNotes: Optional[str] = None


class TransferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    toLocation: str
    notes: Optional[str] = None


class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    holderID: int
    notes: Optional[str] = None


class ReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
