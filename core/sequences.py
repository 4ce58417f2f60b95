"""Public identifier allocation.

Users, groups, chats and messages are addressed by small integers that are
handed out per entity type in creation order. The counter row is locked for the
rest of the caller's transaction, so IDs of one entity type commit in the order
they were allocated.
"""

from sqlalchemy.orm import Session

from models import IdCounter

USERS = "users"
GROUPS = "groups"
CHATS = "chats"
MESSAGES = "messages"


def allocate_id(db: Session, entity: str) -> int:
    counter = (
        db.query(IdCounter)
        .filter(IdCounter.name == entity)
        .with_for_update()
        .first()
    )
    if counter is None:
        counter = IdCounter(name=entity, value=0)
        db.add(counter)

    counter.value = (counter.value or 0) + 1
    db.flush()
    return int(counter.value)


def seed_counters(db: Session) -> None:
    """Create the counter rows up front so the first allocations never race on insert."""
    existing = {name for (name,) in db.query(IdCounter.name).all()}
    for name in (USERS, GROUPS, CHATS, MESSAGES):
        if name not in existing:
            db.add(IdCounter(name=name, value=0))
    db.commit()
