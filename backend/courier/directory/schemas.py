"""Pydantic schemas for the user/community directory."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PushPlatform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class MemberRole(str, Enum):
    """Role of a user inside a community.

    Attributes:
        OWNER: Creator of the community; may delete any message.
        ADMIN: May delete any message.
        MEMBER: Regular member.
    """
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class UserRecord(BaseModel):
    userId: str = Field(..., description="User ID")
    username: Optional[str] = Field(None, description="Display name")
    picture: Optional[str] = Field(None, description="Avatar URL")
    hasPushToken: bool = Field(False, description="Whether a push token is registered")
    pushPlatform: Optional[PushPlatform] = Field(None, description="Push token platform")


class PushTarget(BaseModel):
    """What a notification dispatcher needs to reach a user."""
    userId: str
    pushToken: str
    platform: Optional[PushPlatform] = None


class CommunityRecord(BaseModel):
    communityId: str = Field(..., description="Community ID")
    name: str = Field(..., description="Community name")
    createdBy: str = Field(..., description="Owner's user ID")


class PushTokenRequest(BaseModel):
    """Body of POST /notifications/register-token."""
    userId: Optional[str] = Field(None, description="User ID")
    pushToken: Optional[str] = Field(None, description="Device push token")
    platform: Optional[PushPlatform] = Field(None, description="ios or android")


class PushTokenResponse(BaseModel):
    userId: str
    hasPushToken: bool
