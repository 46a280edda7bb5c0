"""
Seed script to create demo actors in MongoDB.
Creates one official, one staff member per department and two citizens.
Safe to re-run: existing usernames are skipped.
"""
from passlib.context import CryptContext

from . import config
from .models import ActorProfile, ActorRole, Department
from .store import ACTORS, MongoRecordStore

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

USERS = [
    {"username": "official1", "password": "official123", "display_name": "City Operations Desk",
     "email": "ops@civicgrid.example", "role": ActorRole.OFFICIAL, "department": None},
    {"username": "citizen1", "password": "citizen123", "display_name": "Asha Rao",
     "email": "asha.rao@example.com", "phone_number": "+15550100001",
     "role": ActorRole.CITIZEN, "department": None},
    {"username": "citizen2", "password": "citizen123", "display_name": "Marco Silva",
     "email": "marco.silva@example.com", "phone_number": "+15550100002",
     "role": ActorRole.CITIZEN, "department": None},
] + [
    {"username": "staff_" + d.name.lower(), "password": "staff123",
     "display_name": f"{d.value} Field Team", "email": f"{d.name.lower()}@civicgrid.example",
     "role": ActorRole.STAFF, "department": d}
    for d in Department
]


def build_profile(user: dict) -> ActorProfile:
    return ActorProfile(
        id="seed_" + user["username"],
        role=user["role"],
        username=user["username"],
        hashed_password=pwd_context.hash(user["password"]),
        display_name=user["display_name"],
        email=user["email"],
        phone_number=user.get("phone_number"),
        department=user["department"],
    )


def seed(store: MongoRecordStore) -> tuple:
    created = 0
    skipped = 0
    for user in USERS:
        if store.find_actor_by_username(user["username"]) or not store.create_if_absent(ACTORS, build_profile(user)):
            print(f"  SKIP  {user['username']} (already exists)")
            skipped += 1
            continue
        print(f"  OK    {user['username']} (role: {user['role'].value})")
        created += 1
    print(f"\nDone! Created: {created}, Skipped: {skipped}")
    return created, skipped


if __name__ == "__main__":
    print(f"Connecting to: {config.MONGODB_URL}")
    record_store = MongoRecordStore.from_url()
    record_store.ensure_indexes()
    seed(record_store)
    record_store.close()
