"""Group schemas."""

from typing import List, Optional

from pydantic import BaseModel, Field

from config import GROUP_DESCRIPTION_MAX_LENGTH, GROUP_NAME_MAX_LENGTH


class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=GROUP_NAME_MAX_LENGTH, example="Weekend hikers")
    members: List[int] = Field(..., description="User IDs to add besides the creator", example=[2, 3])
    description: Optional[str] = Field(None, max_length=GROUP_DESCRIPTION_MAX_LENGTH)

    class Config:
        json_schema_extra = {
            "example": {"name": "Weekend hikers", "members": [2, 3]}
        }


class GroupUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=GROUP_NAME_MAX_LENGTH)
    description: Optional[str] = Field(None, max_length=GROUP_DESCRIPTION_MAX_LENGTH)
    image: Optional[str] = Field(None, description="Base64 data URI")
    banner: Optional[str] = Field(None, description="Base64 data URI")


class GroupAddMembersRequest(BaseModel):
    user_ids: List[int] = Field(..., alias="userIDs", min_length=1, max_length=50)

    class Config:
        populate_by_name = True
