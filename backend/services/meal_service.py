from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, selectinload

from ai.vision_analyzer import VisionAnalyzer
from config import settings
from db.models import Food, MealAnalysis, User
from services import meal_cache
from services.blob_service import BlobStorage
from services.usage_service import enforce_scan_quota, record_usage
from utils.datetime_utils import utcnow
from utils.errors import ForbiddenError, NotFoundError
from utils.image_utils import validate_blob_name

logger = logging.getLogger(__name__)


@dataclass
class AnalyzeOutcome:
    meal: MealAnalysis
    cached: bool


async def analyze_meal(
    db: Session,
    *,
    user: User,
    blob_name: str,
    storage: BlobStorage,
    analyzer: VisionAnalyzer,
    request_id: str,
) -> AnalyzeOutcome:
    blob_name = validate_blob_name(blob_name)
    enforce_scan_quota(db, user)

    digest = meal_cache.hash_blob_name(blob_name)
    blob_url = storage.object_url(blob_name)

    meal: MealAnalysis | None = None
    cached = False
    hit = meal_cache.lookup(db, digest)
    if hit is not None:
        try:
            meal = meal_cache.create_from_cache(
                db,
                user_id=user.id,
                blob_name=blob_name,
                blob_url=blob_url,
                digest=digest,
                source_meal_id=hit.id,
                request_id=request_id,
            )
            cached = True
        except NotFoundError:
            logger.info(f"Cached analysis vanished before copy, analyzing fresh source_meal_id={hit.id}")

    if meal is None:
        read_url = storage.presign_get(blob_name, int(settings.READ_URL_EXPIRY_SECONDS))
        ai_response = await analyzer.analyze_meal_image(read_url, request_id)
        meal = meal_cache.create_from_analysis(
            db,
            user_id=user.id,
            blob_name=blob_name,
            blob_url=blob_url,
            ai_response=ai_response,
            digest=digest,
            request_id=request_id,
            ai_model=analyzer.model_name,
        )

    try:
        record_usage(db, user.id, meal_id=meal.id)
    except Exception as exc:
        db.rollback()
        logger.error(f"Failed to record usage user_id={user.id} meal_id={meal.id}: {exc}")

    return AnalyzeOutcome(meal=meal, cached=cached)


def list_meals(db: Session, user_id: int, *, limit: int = 50) -> list[MealAnalysis]:
    return (
        db.query(MealAnalysis)
        .options(selectinload(MealAnalysis.foods))
        .filter(MealAnalysis.user_id == user_id)
        .order_by(MealAnalysis.created_at.desc())
        .limit(limit)
        .all()
    )


def get_owned_meal(db: Session, meal_id: str, user_id: int) -> MealAnalysis:
    meal = db.query(MealAnalysis).filter(MealAnalysis.id == meal_id).first()
    if meal is None:
        raise NotFoundError("Meal not found")
    if meal.user_id != user_id:
        logger.warning(f"Meal access denied meal_id={meal_id} requesting_user={user_id}")
        raise ForbiddenError("You do not have permission to access this meal")
    return meal


def apply_corrections(
    db: Session,
    meal: MealAnalysis,
    *,
    foods: list[dict] | None,
    total_protein: float | None,
    notes: str | None,
) -> MealAnalysis:
    """Store user edits. ``ai_response_raw`` is left as the model returned it."""
    corrections: dict = {"corrected_at": utcnow().isoformat()}
    if foods is not None:
        meal.foods.clear()
        db.flush()
        for index, item in enumerate(foods):
            meal.foods.append(
                Food(
                    name=item["name"],
                    portion=item.get("portion") or "",
                    protein=float(item["protein"]),
                    carbs=item.get("carbs"),
                    fat=item.get("fat"),
                    display_order=index,
                )
            )
        corrections["foods"] = foods
        meal.total_protein = round(sum(float(f["protein"]) for f in foods), 2)
        carbs = [f.get("carbs") for f in foods if f.get("carbs") is not None]
        fat = [f.get("fat") for f in foods if f.get("fat") is not None]
        meal.total_carbs = round(sum(carbs), 2) if carbs else None
        meal.total_fat = round(sum(fat), 2) if fat else None
    if total_protein is not None:
        meal.total_protein = float(total_protein)
        corrections["total_protein"] = float(total_protein)
    if notes is not None:
        meal.notes = notes
        corrections["notes"] = notes

    meal.user_corrections = json.dumps(corrections)
    db.commit()
    db.refresh(meal)
    logger.info(f"Meal corrected meal_id={meal.id}")
    return meal


def set_privacy(db: Session, meal: MealAnalysis, is_public: bool) -> MealAnalysis:
    meal.is_public = bool(is_public)
    db.commit()
    db.refresh(meal)
    return meal


def blob_is_shared(db: Session, meal: MealAnalysis) -> bool:
    """True when another record (a cache copy or its source) uses the same photo."""
    return (
        db.query(MealAnalysis.id)
        .filter(MealAnalysis.blob_name == meal.blob_name, MealAnalysis.id != meal.id)
        .first()
        is not None
    )


def delete_meal(db: Session, meal: MealAnalysis, storage: BlobStorage) -> None:
    if blob_is_shared(db, meal):
        logger.info(f"Keeping blob still referenced by other meals meal_id={meal.id}")
    else:
        try:
            storage.delete(meal.blob_name)
        except Exception as exc:
            logger.warning(f"Blob delete failed, removing record anyway meal_id={meal.id}: {exc}")

    meal_id = meal.id
    try:
        # Loading the children makes the ORM delete them even without FK enforcement.
        food_count = len(meal.foods)
        db.delete(meal)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Meal deleted meal_id={meal_id} foods={food_count}")


def get_public_meal(db: Session, share_id: str) -> MealAnalysis:
    meal = (
        db.query(MealAnalysis)
        .options(selectinload(MealAnalysis.foods))
        .filter(MealAnalysis.share_id == share_id)
        .first()
    )
    if meal is None or not meal.is_public:
        raise NotFoundError("Meal not found or is private")
    return meal


def food_calories(protein: float | None, carbs: float | None, fat: float | None) -> int:
    return round((protein or 0) * 4 + (carbs or 0) * 4 + (fat or 0) * 9)
