from pydantic import BaseModel
from typing import List

from chatflow.chat.schemas import Profile


class UserSearchResponseModel(BaseModel):
    users: List[Profile]
