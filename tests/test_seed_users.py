import json

from jobs import seed_users
from services.models_db import User


def test_seed_users_skips_existing_ids(tmp_path, fetch_all):
    path = tmp_path / "users.json"
    path.write_text(json.dumps([
        {"id": "alice", "name": "Alice again"},
        {"id": "dave", "name": "Dave", "image": "https://example.com/dave.png"},
        {"name": "Erin"},
    ]), encoding="utf-8")

    assert seed_users.run(str(path), batch_size=2) == 2

    users = {u.name: u for u in fetch_all(User)}
    assert users["Alice"].id == "alice"
    assert "Alice again" not in users
    assert users["Dave"].image == "https://example.com/dave.png"
    assert users["Erin"].id
