"""Prompt selection for new test sessions."""
import logging
import random
from typing import Dict, List

from sqlalchemy.orm import Session

from ssbprep.constants import PROMPTS_PER_TEST, TEST_TYPES
from ssbprep.db.models import Prompt

logger = logging.getLogger(__name__)


def select_prompts(db: Session, test_type: str) -> List[str]:
    """
    Choose the ordered prompt identifiers for a new session.

    WAT and SRT draw a random sample; picture tests keep catalogue order so
    the blank TAT slide stays last.

    Raises:
        ValueError: Unknown test type or empty catalogue
    """
    if test_type not in TEST_TYPES:
        raise ValueError(f"Unknown test type: {test_type}")

    prompts = db.query(Prompt).filter(
        Prompt.test_type == test_type
    ).order_by(Prompt.position).all()

    if not prompts:
        raise ValueError(f"No prompts available for {test_type}")

    wanted = PROMPTS_PER_TEST[test_type]
    if len(prompts) < wanted:
        logger.warning(
            f"Catalogue has {len(prompts)} prompts for {test_type}, expected {wanted}",
            extra={"test_type": test_type}
        )
        wanted = len(prompts)

    if test_type in ("wat", "srt"):
        chosen = random.sample(prompts, wanted)
    else:
        chosen = prompts[:wanted]

    return [str(prompt.id) for prompt in chosen]


def load_prompts(db: Session, prompt_ids: List[str]) -> Dict[str, Prompt]:
    """Map prompt identifiers to catalogue rows; unknown ids are skipped."""
    numeric_ids = [int(pid) for pid in prompt_ids if str(pid).isdigit()]
    if not numeric_ids:
        return {}
    rows = db.query(Prompt).filter(Prompt.id.in_(numeric_ids)).all()
    return {str(row.id): row for row in rows}


def describe_prompt(prompt: Prompt) -> Dict:
    return {
        "prompt_id": str(prompt.id),
        "content": prompt.content,
        "image_url": prompt.image_url,
    }
