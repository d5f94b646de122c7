from datetime import datetime

from pydantic import BaseModel, Field, constr  # constr pour valider name (string non vide)


class ProductCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    price: float = Field(allow_inf_nan=False)  # non-negative by convention only


class ProductUpdate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    price: float = Field(allow_inf_nan=False)


class ProductResponse(BaseModel):
    id: int
    name: str
    price: float
    created_at: datetime = Field(alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: datetime


class DiagnoseResponse(BaseModel):
    credentials_found: bool = Field(alias="credentialsFound")
    rows_retrieved: int = Field(alias="rowsRetrieved")
    used_fallback: bool = Field(alias="usedFallback")

    class Config:
        populate_by_name = True
