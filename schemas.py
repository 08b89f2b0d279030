import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, validator


def check_username(v: str) -> str:
    if len(v.strip()) < 1:
        raise ValueError('Username must be at least one character long')
    if len(v) > 50:
        raise ValueError('Username cannot exceed 50 characters')
    if re.search(r'\s', v):
        raise ValueError('Username cannot contain spaces')
    return v


def check_password(v: str) -> str:
    if len(v) < 6:
        raise ValueError('Password must be at least 6 characters long')
    if not re.search(r'[A-Z]', v):
        raise ValueError('Password must contain at least one uppercase letter')
    if not re.search(r'[a-z]', v):
        raise ValueError('Password must contain at least one lowercase letter')
    if not re.search(r'\d', v):
        raise ValueError('Password must contain at least one digit')
    if re.search(r'\s', v):
        raise ValueError('Password must not contain any spaces')
    return v


def check_short_text(v: str, field: str) -> str:
    if len(v) < 1:
        raise ValueError(f'{field} cannot be empty')
    if len(v) > 100:
        raise ValueError(f'{field} cannot exceed 100 characters')
    return v


# Requests

class RegisterRequest(BaseModel):
    username: str
    password: str

    @validator('username')
    def username_must_be_valid(cls, v):
        return check_username(v)

    @validator('password')
    def password_must_be_strong(cls, v):
        return check_password(v)


class LoginRequest(BaseModel):
    username: str
    password: str


class UsernameUpdate(BaseModel):
    username: str

    @validator('username')
    def username_must_be_valid(cls, v):
        return check_username(v)


class BioUpdate(BaseModel):
    bio: str

    @validator('bio')
    def bio_must_fit(cls, v):
        return check_short_text(v, 'Bio')


class PasswordChange(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str

    @validator('new_password')
    def new_password_must_be_strong(cls, v):
        return check_password(v)

    @validator('confirm_password')
    def passwords_must_match(cls, v, values):
        if 'new_password' in values and v != values['new_password']:
            raise ValueError('New passwords do not match')
        return v


class DeleteAccountRequest(BaseModel):
    password: str


class StartChatRequest(BaseModel):
    user_id: int


class StartGroupChatRequest(BaseModel):
    user_ids: List[int]
    title: Optional[str] = None
    description: Optional[str] = None

    @validator('title')
    def title_must_fit(cls, v):
        return v if v is None else check_short_text(v, 'Title')

    @validator('description')
    def description_must_fit(cls, v):
        return v if v is None else check_short_text(v, 'Description')


class AddMembersRequest(BaseModel):
    user_ids: List[int]

    @validator('user_ids')
    def must_name_someone(cls, v):
        if not v:
            raise ValueError('Select at least one member to add')
        return v


class TitleUpdate(BaseModel):
    title: str

    @validator('title')
    def title_must_fit(cls, v):
        return check_short_text(v, 'Title')


class DescriptionUpdate(BaseModel):
    description: str

    @validator('description')
    def description_must_fit(cls, v):
        return check_short_text(v, 'Description')


class FavouriteRequest(BaseModel):
    is_favourite: bool
    chat_id: Optional[int] = None
    user_id: Optional[int] = None

    @validator('user_id', always=True)
    def target_must_be_given(cls, v, values):
        if v is None and values.get('chat_id') is None:
            raise ValueError('Either chat_id or user_id must be provided')
        return v


class MessageCreate(BaseModel):
    content: str

    @validator('content')
    def content_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Message content cannot be empty')
        if len(v) > 1000:
            raise ValueError('Message content is too long (max 1000 characters)')
        return v.strip()


# Responses

class ActionResponse(BaseModel):
    success: bool = True
    message: str


class TokenResponse(ActionResponse):
    token: str


class StartChatResponse(BaseModel):
    chat_id: int
    created: bool


class GroupCreatedResponse(ActionResponse):
    chat_id: int


class AvatarResponse(ActionResponse):
    avatar: Optional[str] = None


class UserSummary(BaseModel):
    user_id: int
    username: str
    avatar: Optional[str] = None


class SettingsProfile(BaseModel):
    username: str
    bio: Optional[str] = None
    avatar: Optional[str] = None
    created_at: datetime
    is_online: bool

    class Config:
        from_attributes = True


class SharedGroup(BaseModel):
    chat_id: int
    title: Optional[str] = None
    group_avatar: Optional[str] = None
    members: List[str]


class UserProfile(BaseModel):
    user_id: int
    username: str
    avatar: Optional[str] = None
    bio: Optional[str] = None
    is_online: bool
    added_at: Optional[datetime] = None
    is_favourite: bool = False
    groups_in: List[SharedGroup] = []


class GroupMember(BaseModel):
    user_id: int
    username: str
    avatar: Optional[str] = None
    bio: Optional[str] = None


class GroupProfile(BaseModel):
    chat_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    group_avatar: Optional[str] = None
    created_at: datetime
    added_at: Optional[datetime] = None
    is_favourite: bool = False
    members: List[GroupMember]


class LastMessage(BaseModel):
    message_id: int
    content: str
    is_image: bool
    created_at: datetime
    sender_username: Optional[str] = None


class ContactBase(BaseModel):
    chat_id: int
    last_message: Optional[LastMessage] = None
    unread_count: int = 0
    read_last_message: bool = False
    is_favourite: bool = False


class DirectContact(ContactBase):
    kind: Literal["direct"] = "direct"
    user_id: int
    username: str
    avatar: Optional[str] = None
    is_online: bool = False


class GroupContact(ContactBase):
    kind: Literal["group"] = "group"
    title: Optional[str] = None
    group_avatar: Optional[str] = None
    members: List[str]


Contact = Annotated[Union[DirectContact, GroupContact], Field(discriminator="kind")]


class ReceiptEntry(BaseModel):
    username: str
    read_at: datetime


class TranscriptMessage(BaseModel):
    id: int
    user_id: int
    username: str
    avatar: Optional[str] = None
    message: str
    is_image: bool
    created_at: datetime
    direction: Literal["incoming", "outgoing"]
    read_by: List[ReceiptEntry] = []


class MessageResponse(BaseModel):
    id: int
    chat_id: int
    user_id: int
    message: str
    is_image: bool
    created_at: datetime
    image_url: Optional[str] = None

    class Config:
        from_attributes = True
