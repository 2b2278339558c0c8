# backend/photo_analysis/system_config.py
import logging
from typing import Optional

from sqlmodel import Session

from . import config
from .models import QueueState, SystemConfig, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_KEY = "default_prompt"
DEFAULT_PROMPT_DESCRIPTION = (
    "Prompt prepended to item prompts when analyzing photos. "
    f"At most {config.DEFAULT_PROMPT_MAX_LENGTH} characters."
)


def get_setting(session: Session, key: str, default: str = "") -> str:
    row = session.get(SystemConfig, key)
    return row.value if row and row.value is not None else default


def put_setting(session: Session, key: str, value: str, user_id: Optional[str] = None,
                description: Optional[str] = None):
    row = session.get(SystemConfig, key) or SystemConfig(key=key)
    row.value = value
    row.updated_by = user_id
    row.updated_at = utcnow()
    if description is not None:
        row.description = description
    session.add(row)
    session.commit()


def get_default_prompt(session: Session) -> str:
    return get_setting(session, DEFAULT_PROMPT_KEY, "")


def set_default_prompt(session: Session, value: str, user_id: Optional[str] = None) -> str:
    value = (value or "")[:config.DEFAULT_PROMPT_MAX_LENGTH]
    put_setting(session, DEFAULT_PROMPT_KEY, value, user_id, DEFAULT_PROMPT_DESCRIPTION)
    logger.info("default prompt updated (%d chars)", len(value))
    return value


def ensure_defaults(engine):
    """Create the rows a fresh database needs: default prompt, pause state, seeded API key."""
    with Session(engine) as session:
        if session.get(SystemConfig, DEFAULT_PROMPT_KEY) is None:
            session.add(SystemConfig(key=DEFAULT_PROMPT_KEY, value="", description=DEFAULT_PROMPT_DESCRIPTION))
            logger.info("default_prompt setting created")
        if session.get(QueueState, 1) is None:
            session.add(QueueState(id=1))
        if config.OPENAI_API_KEY and session.get(SystemConfig, "openai_api_key") is None:
            session.add(SystemConfig(key="openai_api_key", value=config.OPENAI_API_KEY))
            logger.info("vision API key seeded from environment")
        session.commit()


# --- global pause flag ---

def get_queue_state(session: Session) -> QueueState:
    state = session.get(QueueState, 1)
    if state is None:
        state = QueueState(id=1)
        session.add(state)
        session.commit()
        session.refresh(state)
    return state


def set_paused(session: Session, reason: str):
    state = get_queue_state(session)
    state.paused = True
    state.reason = reason
    state.paused_at = utcnow()
    session.add(state)
    session.commit()


def clear_paused(session: Session):
    state = get_queue_state(session)
    state.paused = False
    state.reason = None
    state.paused_at = None
    session.add(state)
    session.commit()
