from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator

Grade = Literal["A", "B", "C", "D", "E"]
Provenance = Literal["sharedDatabase", "catalog", "ai"]

VALID_GRADES = ("A", "B", "C", "D", "E")
DEFAULT_GRADE = "A"
INGREDIENTS_UNAVAILABLE = "Not available"
NUTRITION_KEYS = ("energy", "fat", "sugars", "salt", "protein", "fiber", "sodium")


def to_float(value: Any) -> float:
    """Parse a number the way upstream payloads send it; anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if value == value else 0.0  # NaN -> 0
    try:
        parsed = float(str(value).strip().replace(",", "."))
    except (TypeError, ValueError):
        return 0.0
    return parsed if parsed == parsed else 0.0


def coerce_grade(value: Any, default: Optional[str] = DEFAULT_GRADE) -> Optional[str]:
    """Return an upper-case A-E grade, or ``default`` when absent or invalid."""
    if isinstance(value, str):
        g = value.strip().upper()
        if g in VALID_GRADES:
            return g
    return default


def coerce_nutrition(raw: Any) -> Dict[str, float]:
    src = raw if isinstance(raw, dict) else {}
    return {k: to_float(src.get(k)) for k in NUTRITION_KEYS}


def coerce_str_list(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [s.strip() for s in raw.split(",") if s.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(s).strip() for s in raw if s is not None and str(s).strip()]
    return []


def describe(name: str, brand: Optional[str]) -> str:
    return f"{name} by {brand}" if brand else name


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Nutrition(BaseModel):
    energy: float = 0.0  # kcal / 100g
    fat: float = 0.0
    sugars: float = 0.0
    salt: float = 0.0
    protein: float = 0.0
    fiber: float = 0.0
    sodium: float = 0.0

    @field_validator(*NUTRITION_KEYS, mode="before")
    @classmethod
    def _numeric(cls, v: Any) -> float:
        return to_float(v)


class ProductSummary(_CamelModel):
    id: str
    name: str
    brand: Optional[str] = None
    image: Optional[str] = None
    nutri_score: Optional[Grade] = Field(default=None, alias="nutriScore")
    eco_score: Optional[Grade] = Field(default=None, alias="ecoScore")


class Product(_CamelModel):
    id: str
    name: str
    brand: Optional[str] = None
    nutrition: Nutrition = Field(default_factory=Nutrition)
    ingredients: str = INGREDIENTS_UNAVAILABLE
    allergens: List[str] = Field(default_factory=list)
    # Catalog records may carry no grade; AI and shared-DB records always do.
    nutri_score: Optional[Grade] = Field(default=None, alias="nutriScore")
    eco_score: Optional[Grade] = Field(default=None, alias="ecoScore")
    packaging: List[str] = Field(default_factory=list)
    description: str = ""
    image: Optional[str] = None
    additives: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    carbon_footprint: Optional[float] = Field(default=None, alias="carbonFootprint")


class Identification(BaseModel):
    name: str
    brand: Optional[str] = None

    @property
    def query(self) -> str:
        return f"{self.brand} {self.name}" if self.brand else self.name


class NutritionEstimate(_CamelModel):
    """Validated payload of the nutrition-estimation prompt."""
    name: Optional[str] = None
    brand: Optional[str] = None
    nutrition: Nutrition = Field(default_factory=Nutrition)
    ingredients: str = INGREDIENTS_UNAVAILABLE
    allergens: List[str] = Field(default_factory=list)
    nutri_score: Grade = Field(default=DEFAULT_GRADE, alias="nutriScore")
    eco_score: Grade = Field(default=DEFAULT_GRADE, alias="ecoScore")
    packaging: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    degraded: bool = False


class ResolutionResult(BaseModel):
    product: Product
    provenance: Provenance
    degraded: bool = False


# --- HTTP models ---
class SearchResponse(BaseModel):
    products: List[ProductSummary] = Field(default_factory=list)


class ProductResponse(BaseModel):
    product: Product


class AnalyzeResponse(BaseModel):
    data: Product
    provenance: Provenance
    degraded: bool = False


class HealthResponse(BaseModel):
    status: str
    cpu_percent: float
    rss_bytes: int
    db: bool = False


class HistoryEntryRequest(_CamelModel):
    query: str = Field(min_length=1, max_length=200)
    product_id: Optional[str] = Field(default=None, alias="productId")
    user_id: Optional[str] = Field(default=None, alias="userId")


class HistoryResponse(BaseModel):
    history: Optional[Any] = None


class ContributionRequest(_CamelModel):
    product_name: str = Field(alias="productName")
    brand: Optional[str] = None
    energy: Any = None
    fat: Any = None
    sugars: Any = None
    salt: Any = None
    protein: Any = None
    fiber: Any = None
    sodium: Any = None
    ingredients: Optional[str] = None
    allergens: Any = None  # "milk, soy" or ["milk", "soy"]
    nutri_score: Optional[str] = Field(default=None, alias="nutriScore")
    eco_score: Optional[str] = Field(default=None, alias="ecoScore")
    packaging: List[str] = Field(default_factory=list)
    user_id: Optional[str] = Field(default=None, alias="userId")


class ProfileStats(_CamelModel):
    user_id: str = Field(alias="userId")
    total_contributions: int = Field(default=0, alias="totalContributions")
    total_scans: int = Field(default=0, alias="totalScans")
    points: int = 0
    level: int = 1
    next_level_points: int = Field(default=100, alias="nextLevelPoints")
    progress_to_next_level: float = Field(default=0.0, alias="progressToNextLevel")
    title: str = "New Contributor"
    recent_contributions: List[Dict[str, Any]] = Field(default_factory=list, alias="recentContributions")
