import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ai.vision_analyzer import VisionAnalyzer, get_vision_analyzer
from auth.utils import get_current_user
from config import settings
from db.database import get_db
from db.models import MealAnalysis, User
from services import meal_service
from services.blob_service import BlobStorage, get_blob_storage
from services.request_context import current_request_id
from utils.datetime_utils import isoformat_z
from utils.errors import ValidationError
from utils.share_ids import is_valid_share_id, share_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meals", tags=["meals"])


def _food_to_dict(food) -> dict:
    return {
        "id": food.id,
        "name": food.name,
        "portion": food.portion,
        "protein": food.protein,
        "carbs": food.carbs,
        "fat": food.fat,
    }


def _meal_to_dict(meal: MealAnalysis, *, cached: Optional[bool] = None) -> dict:
    payload = {
        "id": meal.id,
        "blob_name": meal.blob_name,
        "blob_url": meal.blob_url,
        "request_id": meal.request_id,
        "ai_model": meal.ai_model,
        "foods": [_food_to_dict(f) for f in meal.foods],
        "total_protein": meal.total_protein,
        "total_carbs": meal.total_carbs,
        "total_fat": meal.total_fat,
        "confidence": meal.confidence,
        "notes": meal.notes,
        "user_corrections": json.loads(meal.user_corrections) if meal.user_corrections else None,
        "share_id": meal.share_id,
        "share_url": share_url(settings.FRONTEND_URL, meal.share_id),
        "is_public": bool(meal.is_public),
        "created_at": isoformat_z(meal.created_at),
    }
    if cached is not None:
        payload["cached"] = cached
    return payload


class AnalyzeRequest(BaseModel):
    blob_name: str = Field(min_length=1, max_length=500)


class FoodCorrection(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    portion: Optional[str] = Field(default=None, max_length=100)
    protein: float = Field(ge=0, le=500)
    carbs: Optional[float] = Field(default=None, ge=0, le=999.99)
    fat: Optional[float] = Field(default=None, ge=0, le=999.99)


class CorrectionsRequest(BaseModel):
    foods: Optional[list[FoodCorrection]] = None
    total_protein: Optional[float] = Field(default=None, ge=0, le=1000)
    notes: Optional[str] = Field(default=None, max_length=1000)


class PrivacyRequest(BaseModel):
    is_public: bool


@router.post("/analyze")
async def analyze(
    req: AnalyzeRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
):
    request_id = current_request_id() or "unknown"
    outcome = await meal_service.analyze_meal(
        db,
        user=user,
        blob_name=req.blob_name,
        storage=storage,
        analyzer=analyzer,
        request_id=request_id,
    )
    return _meal_to_dict(outcome.meal, cached=outcome.cached)


@router.get("")
def list_meals(
    limit: int = Query(default=50, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    meals = meal_service.list_meals(db, user.id, limit=limit)
    return {"meals": [_meal_to_dict(m) for m in meals], "count": len(meals)}


@router.get("/{meal_id}")
def get_meal(
    meal_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _meal_to_dict(meal_service.get_owned_meal(db, meal_id, user.id))


@router.patch("/{meal_id}")
def update_meal(
    meal_id: str,
    req: CorrectionsRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if req.foods is None and req.total_protein is None and req.notes is None:
        raise ValidationError("No corrections provided")
    meal = meal_service.get_owned_meal(db, meal_id, user.id)
    meal = meal_service.apply_corrections(
        db,
        meal,
        foods=[f.model_dump() for f in req.foods] if req.foods is not None else None,
        total_protein=req.total_protein,
        notes=req.notes,
    )
    return _meal_to_dict(meal)


@router.patch("/{meal_id}/privacy")
def update_privacy(
    meal_id: str,
    req: PrivacyRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    meal = meal_service.get_owned_meal(db, meal_id, user.id)
    meal = meal_service.set_privacy(db, meal, req.is_public)
    return {
        "share_id": meal.share_id,
        "share_url": share_url(settings.FRONTEND_URL, meal.share_id),
        "is_public": bool(meal.is_public),
    }


@router.delete("/{meal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_meal(
    meal_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
):
    meal = meal_service.get_owned_meal(db, meal_id, user.id)
    meal_service.delete_meal(db, meal, storage)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{share_id}/public")
def public_meal(
    share_id: str,
    response: Response,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
):
    if not is_valid_share_id(share_id):
        raise ValidationError("Invalid share ID format")
    meal = meal_service.get_public_meal(db, share_id)

    image_url = meal.blob_url
    try:
        image_url = storage.presign_get(meal.blob_name, int(settings.PUBLIC_IMAGE_URL_EXPIRY_SECONDS))
    except Exception as exc:
        logger.warning(f"Falling back to unsigned image URL share_id={share_id}: {exc}")

    foods = []
    for food in meal.foods:
        carbs = food.carbs or 0
        fat = food.fat or 0
        foods.append(
            {
                "name": food.name,
                "portion": food.portion,
                "protein": food.protein,
                "carbs": carbs,
                "fat": fat,
                "calories": meal_service.food_calories(food.protein, carbs, fat),
            }
        )

    response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    response.headers["ETag"] = f'"{meal.share_id}"'
    return {
        "meal": {
            "share_id": meal.share_id,
            "uploaded_at": isoformat_z(meal.created_at),
            "image_url": image_url,
            "total_protein": meal.total_protein,
            "total_carbs": round(sum(f["carbs"] for f in foods), 2),
            "total_fat": round(sum(f["fat"] for f in foods), 2),
            "total_calories": sum(f["calories"] for f in foods),
            "confidence": meal.confidence,
            "pro_tip": meal.notes,
            "foods": foods,
        },
        "share_url": share_url(settings.FRONTEND_URL, meal.share_id),
    }
