# backend/photo_analysis/collaborators.py
"""
Narrow access to tables owned by other subsystems (reports, photos, taxonomy).
The queue only ever touches them through these functions.
"""
from typing import List, Optional

from sqlmodel import Session, select, func

from . import config
from .models import Environment, Item, Photo, Report
from .text_match import text_matches

ANALYZED = "yes"
NOT_ANALYZED = "no"

REPORT_PENDING = "pending"
REPORT_IN_PROGRESS = "in_progress"
REPORT_DONE = "done"


# --- photos ---

def count_unanalyzed(session: Session, report_id: str) -> int:
    stmt = select(func.count()).select_from(Photo).where(
        Photo.report_id == report_id, Photo.analyzed == NOT_ANALYZED)
    return session.exec(stmt).one()


def next_unanalyzed(session: Session, report_id: str) -> Optional[Photo]:
    stmt = (
        select(Photo)
        .where(Photo.report_id == report_id, Photo.analyzed == NOT_ANALYZED)
        .order_by(Photo.ordering, Photo.created_at, Photo.id)
    )
    return session.exec(stmt).first()


def save_caption(session: Session, photo: Photo, caption: str):
    photo.caption = caption
    photo.analyzed = ANALYZED
    session.add(photo)
    session.commit()


def reset_photos(session: Session, report_id: str, clear_captions: bool = True) -> int:
    photos = session.exec(select(Photo).where(Photo.report_id == report_id)).all()
    for photo in photos:
        photo.analyzed = NOT_ANALYZED
        if clear_captions:
            photo.caption = None
        session.add(photo)
    session.commit()
    return len(photos)


def photo_url(photo: Photo) -> str:
    return f"{config.IMAGE_BASE_URL.rstrip('/')}/{photo.storage_key.lstrip('/')}"


# --- reports ---

def get_report(session: Session, report_id: str) -> Optional[Report]:
    return session.get(Report, report_id)


def set_report_status(session: Session, report_id: str, status: str):
    report = session.get(Report, report_id)
    if report is None:
        return
    report.status = status
    session.add(report)
    session.commit()


# --- taxonomy ---

def find_environment(session: Session, label: Optional[str]) -> Optional[Environment]:
    environments = session.exec(select(Environment).order_by(Environment.ordering)).all()
    return next((env for env in environments if text_matches(env.name, label)), None)


def find_item(session: Session, environment_id: str, label: Optional[str]) -> Optional[Item]:
    items = session.exec(
        select(Item).where(Item.environment_id == environment_id).order_by(Item.ordering)
    ).all()
    return next((item for item in items if text_matches(item.name, label)), None)


def children_of(session: Session, item_id: str) -> List[Item]:
    stmt = select(Item).where(Item.parent_id == item_id, Item.active == True).order_by(Item.ordering)  # noqa: E712
    return list(session.exec(stmt).all())

