from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class FoodItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=200)
    portion: str = Field(min_length=1, max_length=100)
    protein: float = Field(ge=0, le=999.99, validation_alias=AliasChoices("protein", "proteinGrams"))
    carbs: float | None = Field(
        default=None, ge=0, le=999.99, validation_alias=AliasChoices("carbs", "carbsGrams")
    )
    fat: float | None = Field(
        default=None, ge=0, le=999.99, validation_alias=AliasChoices("fat", "fatGrams")
    )


class AIAnalysisResponse(BaseModel):
    """Structured answer expected from the vision model."""

    model_config = ConfigDict(populate_by_name=True)

    foods: list[FoodItem] = Field(default_factory=list, max_length=50)
    total_protein: float = Field(
        ge=0,
        le=9999.99,
        alias="totalProtein",
        validation_alias=AliasChoices("totalProtein", "total_protein"),
    )
    total_carbs: float | None = Field(
        default=None,
        ge=0,
        le=9999.99,
        alias="totalCarbs",
        validation_alias=AliasChoices("totalCarbs", "total_carbs"),
    )
    total_fat: float | None = Field(
        default=None,
        ge=0,
        le=9999.99,
        alias="totalFat",
        validation_alias=AliasChoices("totalFat", "total_fat"),
    )
    confidence: Literal["high", "medium", "low"]
    notes: str | None = None

    def to_raw(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
