from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, Literal, List, Dict, Any

Category = Literal["Hate", "SelfHarm", "Sexual", "Violence"]

ALL_CATEGORIES: List[str] = ["Hate", "SelfHarm", "Sexual", "Violence"]
DEFAULT_OUTPUT_TYPE = "FourSeverityLevels"


# ---- Requests ----
class ModerationTextRequest(BaseModel):
    content: str
    categories: Optional[List[Category]] = None
    output_type: str = Field(DEFAULT_OUTPUT_TYPE, alias="outputType", min_length=1)

    class Config:
        populate_by_name = True


# ---- Ledger metadata ----
class ImageReference(BaseModel):
    type: Literal["upload"] = "upload"
    original_filename: str
    path: Optional[str] = None


class RequestMetadata(BaseModel):
    """Shape of ``ModerationRequest.request_metadata``; ``image`` only for images."""
    categories: List[str]
    output_type: str = Field(alias="outputType")
    api_version: str
    image: Optional[ImageReference] = None

    class Config:
        populate_by_name = True

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---- Responses ----
class CategorySeverity(BaseModel):
    category: str
    severity: int


class TextModerationResponse(BaseModel):
    request_id: int
    result: Optional[List[CategorySeverity]] = None


class UploadInfo(BaseModel):
    path: str
    original_filename: str
    content_type: str
    bytes: int
    exists: bool


class ImageModerationResponse(BaseModel):
    message: str
    request_id: int
    analysis: Optional[Dict[str, Any]] = None
    upload: UploadInfo


class ModerationErrorResponse(BaseModel):
    error: str
    request_id: Optional[int] = None
    status: Optional[int] = None
    details: Optional[Any] = None
    message: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None


class ModerationRecordResponse(BaseModel):
    id: int
    content_type: str
    content: str
    request_metadata: Dict[str, Any]
    moderation_result: Optional[Any] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    image_url: Optional[str] = None

    class Config:
        from_attributes = True


class ModerationRecordPage(BaseModel):
    items: List[ModerationRecordResponse]
    total: int
    page: int
    page_size: int
    pages: int
    search: str = ""
