"""
demo_users.py — stand-alone login directory.

Users come from demo_users.json shipped beside this module. Sessions minted
for them are always synthetic: nothing they do in training is persisted.
"""
import hmac
import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from simportal.auth.schemas import Role

logger = logging.getLogger(__name__)

DEMO_USERS_PATH = Path(__file__).parent / "demo_users.json"


class DemoUser(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str
    password: str
    role: Role
    full_name: str
    institution: str = "Unknown Institution"


class DemoDirectory:
    def __init__(self, users: List[DemoUser]) -> None:
        self._users = list(users)

    @classmethod
    def load(cls, path: Path = DEMO_USERS_PATH) -> "DemoDirectory":
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        users = [DemoUser.model_validate(u) for u in data.get("users", [])]
        logger.info("Loaded %d demo user(s) from %s", len(users), path.name)
        return cls(users)

    def authenticate(self, email: str, password: str) -> Optional[DemoUser]:
        """Case-insensitive email match, constant-time password compare."""
        wanted = email.strip().lower()
        for user in self._users:
            if user.email.lower() != wanted:
                continue
            if hmac.compare_digest(user.password.encode("utf-8"), password.encode("utf-8")):
                return user
            return None
        return None
