from pydantic import BaseModel, Field


class ModelEntry(BaseModel):
    brand: str
    name: str

    model_config = {"frozen": True}


class QuickAdd(BaseModel):
    value: str = Field(..., min_length=1, max_length=255)


class ModelQuickAdd(BaseModel):
    brand: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)


class ReferenceLists(BaseModel):
    brands: list[str]
    models: list[ModelEntry]
    vendors: list[str]
    departments: list[str]
