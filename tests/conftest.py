from types import SimpleNamespace

import pytest

from database import build_engine, build_sessionmaker, init_db
from models import Group, GroupMembership, Membership, Parish, User


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


def seed_parish(session, slug="st-brigid", timezone="America/New_York"):
    """A parish with one user per role and a choir group."""
    parish = Parish(name=slug.replace("-", " ").title(), slug=slug, timezone=timezone)
    session.add(parish)
    session.flush()

    def person(key, role=None):
        user = User(name=key.title(), email=f"{key}@{slug}.example.org", active_parish_id=parish.id)
        session.add(user)
        session.flush()
        if role:
            session.add(Membership(parish_id=parish.id, user_id=user.id, role=role))
        return user

    users = SimpleNamespace(
        shepherd=person("shepherd", "SHEPHERD"),
        admin=person("admin", "ADMIN"),
        member=person("member", "MEMBER"),
        coordinator=person("coordinator", "MEMBER"),
        invited=person("invited", "MEMBER"),
        outsider=person("outsider"),
    )

    choir = Group(parish_id=parish.id, name="Choir")
    session.add(choir)
    session.flush()
    session.add_all([
        GroupMembership(group_id=choir.id, user_id=users.coordinator.id, role="COORDINATOR", status="ACTIVE"),
        GroupMembership(group_id=choir.id, user_id=users.member.id, role="PARISHIONER", status="ACTIVE"),
        GroupMembership(group_id=choir.id, user_id=users.invited.id, role="PARISHIONER", status="INVITED"),
    ])
    session.flush()
    return SimpleNamespace(parish=parish, users=users, choir=choir)


@pytest.fixture
def make_parish():
    return seed_parish


@pytest.fixture
def seeded(db):
    world = seed_parish(db)
    db.commit()
    return world
