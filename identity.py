from typing import Optional

from models.user_models import UserIdentity
from utils import to_object_id


def display_name(user) -> str:
    full_name = f"{user.get('fName', '')} {user.get('lName', '')}".strip()
    return full_name or user.get("username") or user.get("email") or "Unknown User"


class IdentityProvider:
    """Resolves user ids against the users collection."""

    def __init__(self, database):
        self.users = database.users

    async def get_user(self, user_id: str) -> Optional[UserIdentity]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        user = await self.users.find_one({"_id": oid}, {"fName": 1, "lName": 1, "username": 1, "email": 1})
        if not user:
            return None
        return UserIdentity(id=str(user["_id"]), display_name=display_name(user))
