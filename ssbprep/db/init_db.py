"""Database initialization and prompt catalogue seeding."""
import logging
from typing import Dict, List

from sqlalchemy.orm import Session

from ssbprep.db.database import engine, SessionLocal, Base
from ssbprep.db.models import Prompt

logger = logging.getLogger(__name__)

WAT_WORDS = [
    "Army", "Duty", "Failure", "Friend", "Leader", "Fear", "Brave", "Team",
    "Attack", "Death", "Success", "Mother", "Discipline", "Enemy", "Help",
    "Country", "Risk", "Crowd", "Defeat", "Love", "Accident", "Courage",
    "Sacrifice", "Money", "Alone", "Mountain", "Unity", "Problem", "Father",
    "River", "Challenge", "Honest", "Dark", "Cooperate", "Decision", "Fight",
    "Goal", "Patience", "Weak", "Victory", "Teacher", "Flood", "Trust",
    "Punish", "Health", "Society", "Lazy", "Responsibility", "Plan", "Fire",
    "Careful", "Border", "Confidence", "Mistake", "Game", "Neighbour",
    "Struggle", "Rules", "Nation", "Smile",
]

SRT_SITUATIONS = [
    "He was going to appear for his final exam when he saw an accident on the road. He...",
    "His team lost the first match of the tournament and the captain fell ill. He...",
    "While trekking, his group lost its way and night was approaching. He...",
    "He found that his close friend was copying in the examination hall. He...",
    "The village was flooded and the rescue boat could take only a few people. He...",
    "His senior asked him to finish a task that he felt was unfair to others. He...",
    "He was travelling by train at night when he noticed smoke in the next coach. He...",
    "His parents wanted him to take up a job while he wanted to join the forces. He...",
    "He was put in charge of a college fest and the sponsor withdrew a week before. He...",
    "On reaching the station he found that his wallet and ticket were stolen. He...",
    "Two of his teammates were quarrelling just before an important presentation. He...",
    "He saw a group of boys teasing a girl at the bus stop. He...",
    "He was the only one who knew first aid when a player collapsed on the field. He...",
    "His neighbour's house caught fire while the family was away. He...",
    "He was asked to lead a group of juniors who did not respect him. He...",
    "During a storm the electricity failed in the hostel on the night before exams. He...",
    "He was offered a bribe to pass a substandard consignment. He...",
    "His bicycle broke down in a remote area far from the nearest town. He...",
    "He noticed that the accounts of his club did not match the receipts. He...",
    "He was selected for two competitions scheduled on the same day. He...",
]

TAT_PICTURES = [
    "A young man standing at the edge of a field looking at a distant village",
    "Two people discussing over a map spread on a table",
    "A group of students gathered around a notice board",
    "A woman helping an elderly man cross a busy road",
    "Soldiers resting near a vehicle on a mountain road",
    "A boy sitting alone on the steps of a building",
    "People working together to repair a damaged bridge",
    "A man addressing a small crowd in a village square",
    "A doctor attending to a patient in a makeshift camp",
    "Two friends climbing a steep rocky slope",
    "A family loading belongings onto a boat near a river",
]

PPDT_PICTURES = [
    "A hazy scene with a few figures near a vehicle at a roadside",
    "A hazy scene of people gathered near a hut at dusk",
    "A hazy scene of a person standing beside a fallen tree on a path",
]

PHOTO_STORY_PICTURES = [
    "A crowded railway platform with a child separated from a group",
    "A farmer looking at a dry field under a cloudy sky",
    "A relief truck stuck on a muddy road",
]


def _picture_prompts(test_type: str, descriptions: List[str]) -> List[Dict]:
    return [
        {
            "test_type": test_type,
            "position": position,
            "content": description,
            "image_url": f"images/{test_type}/{position:02d}.jpg",
        }
        for position, description in enumerate(descriptions, start=1)
    ]


def build_seed_prompts() -> List[Dict]:
    """Full default catalogue, one dict per Prompt row."""
    prompts = [
        {"test_type": "wat", "position": position, "content": word, "image_url": None}
        for position, word in enumerate(WAT_WORDS, start=1)
    ]
    prompts += [
        {"test_type": "srt", "position": position, "content": situation, "image_url": None}
        for position, situation in enumerate(SRT_SITUATIONS, start=1)
    ]
    tat = _picture_prompts("tat", TAT_PICTURES)
    # Twelfth TAT slide is blank: the candidate writes a story of their own
    tat.append({
        "test_type": "tat",
        "position": len(TAT_PICTURES) + 1,
        "content": "Blank slide: imagine a picture and write a story about it",
        "image_url": None,
    })
    prompts += tat
    prompts += _picture_prompts("ppdt", PPDT_PICTURES)
    prompts += _picture_prompts("photo_story", PHOTO_STORY_PICTURES)
    return prompts


SEED_PROMPTS = build_seed_prompts()


def seed_prompts(db: Session) -> int:
    """
    Seed the prompt catalogue for every test type that has no prompts yet.

    Returns:
        Number of prompts inserted
    """
    populated = {
        test_type for (test_type,) in db.query(Prompt.test_type).distinct()
    }

    inserted = 0
    for data in SEED_PROMPTS:
        if data["test_type"] in populated:
            continue
        db.add(Prompt(**data))
        inserted += 1

    if inserted:
        db.commit()
        logger.info(f"Seeded {inserted} prompts")
    else:
        logger.info("Prompt catalogue already populated. Skipping seed.")
    return inserted


def init_db() -> None:
    """
    Initialize database: create tables and seed the prompt catalogue.

    Safe to call multiple times - all operations are idempotent.
    """
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Tables created/verified successfully.")

    db = SessionLocal()
    try:
        seed_prompts(db)
        logger.info("Database initialization complete.")
    except Exception as e:
        logger.error(f"Error during database initialization: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    init_db()
