from pydantic import BaseModel


class UserIdentity(BaseModel):
    id: str
    display_name: str
