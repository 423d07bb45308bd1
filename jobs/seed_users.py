import os, json, tqdm
from dotenv import load_dotenv
from sqlmodel import select

load_dotenv()

from db import init_db, get_session  # noqa: E402
from services.models_db import User  # noqa: E402

DATA = os.path.join(os.path.dirname(__file__), "..", "data", "users.json")

def load_users(path: str = DATA) -> list[dict]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def run(path: str = DATA, batch_size: int = 128) -> int:
    """Insert users from a JSON list of {id?, name, image?}; existing ids are skipped."""
    init_db()
    users = load_users(path)
    added = 0

    for i in tqdm.tqdm(range(0, len(users), batch_size)):
        chunk = users[i:i+batch_size]
        with get_session() as session:
            ids = [u["id"] for u in chunk if u.get("id")]
            existing = set(session.exec(select(User.id).where(User.id.in_(ids))).all()) if ids else set()
            for u in chunk:
                if u.get("id") in existing:
                    continue
                session.add(User(**{k: u[k] for k in ("id", "name", "image") if k in u}))
                added += 1
            session.commit()
    return added

if __name__ == "__main__":
    print(f"Seeded {run()} users.")
