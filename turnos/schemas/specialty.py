from pydantic import BaseModel, Field


class SpecialtyCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str | None = None


class SpecialtyResponse(BaseModel):
    id: int
    name: str
    description: str | None = None
    version: int

    model_config = {"from_attributes": True}
