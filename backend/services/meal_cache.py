"""Content-hash result cache for meal analyses.

Repeat analyses of the same stored photo reuse an earlier AI answer. The key
is the SHA-256 of the storage object name, not of the image bytes, so two
different photos uploaded under the same name would share a result. Blob names
carry a millisecond timestamp and a random suffix, which keeps that theoretical.

There is no lock between ``lookup`` and the ``create_*`` calls: concurrent
misses for one digest may each call the AI and each write a record.
"""

from __future__ import annotations

import hashlib
import json
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ai.schemas import AIAnalysisResponse
from db.models import Food, MealAnalysis
from utils.errors import InternalError, NotFoundError, ValidationError
from utils.share_ids import generate_share_id

logger = logging.getLogger(__name__)

SHARE_ID_ATTEMPTS = 5


def hash_blob_name(blob_name: str) -> str:
    if not blob_name:
        raise ValidationError("blob_name is required")
    return hashlib.sha256(blob_name.encode("utf-8")).hexdigest()


def lookup(db: Session, digest: str) -> MealAnalysis | None:
    if not digest:
        return None
    return (
        db.query(MealAnalysis)
        .filter(MealAnalysis.blob_hash == digest)
        .order_by(MealAnalysis.created_at.desc())
        .first()
    )


def _unused_share_id(db: Session) -> str:
    for _ in range(SHARE_ID_ATTEMPTS):
        candidate = generate_share_id()
        exists = db.query(MealAnalysis.id).filter(MealAnalysis.share_id == candidate).first()
        if not exists:
            return candidate
    raise InternalError("Could not allocate a unique share id")


def _persist(db: Session, meal: MealAnalysis, foods: list[Food]) -> MealAnalysis:
    try:
        db.add(meal)
        db.flush()
        for index, food in enumerate(foods):
            food.meal_analysis_id = meal.id
            food.display_order = index
            db.add(food)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(meal)
    return meal


def _record_from_response(
    db: Session,
    *,
    user_id: int,
    blob_name: str,
    blob_url: str,
    digest: str,
    request_id: str,
    ai_model: str,
    ai_response: AIAnalysisResponse,
    ai_response_raw: str,
) -> tuple[MealAnalysis, list[Food]]:
    meal = MealAnalysis(
        user_id=user_id,
        blob_name=blob_name,
        blob_url=blob_url,
        blob_hash=digest,
        request_id=request_id,
        ai_model=ai_model,
        ai_response_raw=ai_response_raw,
        total_protein=ai_response.total_protein,
        total_carbs=ai_response.total_carbs,
        total_fat=ai_response.total_fat,
        confidence=ai_response.confidence,
        notes=ai_response.notes,
        share_id=_unused_share_id(db),
        is_public=True,
    )
    foods = [
        Food(name=item.name, portion=item.portion, protein=item.protein, carbs=item.carbs, fat=item.fat)
        for item in ai_response.foods
    ]
    return meal, foods


def create_from_analysis(
    db: Session,
    *,
    user_id: int,
    blob_name: str,
    blob_url: str,
    ai_response: AIAnalysisResponse,
    digest: str,
    request_id: str,
    ai_model: str,
) -> MealAnalysis:
    meal, foods = _record_from_response(
        db,
        user_id=user_id,
        blob_name=blob_name,
        blob_url=blob_url,
        digest=digest,
        request_id=request_id,
        ai_model=ai_model,
        ai_response=ai_response,
        ai_response_raw=json.dumps(ai_response.to_raw()),
    )
    meal = _persist(db, meal, foods)
    logger.info(f"Stored fresh analysis meal_id={meal.id} foods={len(foods)}")
    return meal


def create_from_cache(
    db: Session,
    *,
    user_id: int,
    blob_name: str,
    blob_url: str,
    digest: str,
    source_meal_id: str,
    request_id: str,
) -> MealAnalysis:
    """Copy the model's original answer into a new record for ``user_id``.

    Totals, notes and foods come from ``ai_response_raw``; the source owner's
    corrections live in the mutable columns and are never copied.
    """
    source = db.query(MealAnalysis).filter(MealAnalysis.id == source_meal_id).first()
    if source is None:
        raise NotFoundError("Cached analysis no longer exists")
    try:
        ai_response = AIAnalysisResponse.model_validate(json.loads(source.ai_response_raw))
    except (ValueError, PydanticValidationError) as exc:
        logger.warning(f"Cached analysis unreadable source_meal_id={source_meal_id}: {exc}")
        raise NotFoundError("Cached analysis is unreadable")

    meal, foods = _record_from_response(
        db,
        user_id=user_id,
        blob_name=blob_name,
        blob_url=blob_url,
        digest=digest,
        request_id=request_id,
        ai_model=source.ai_model,
        ai_response=ai_response,
        ai_response_raw=source.ai_response_raw,
    )
    meal = _persist(db, meal, foods)
    logger.info(f"Cache hit served meal_id={meal.id} source_meal_id={source_meal_id}")
    return meal
