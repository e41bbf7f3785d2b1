from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .fields import ExtractedFields


class GenerateLinkPayload(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""


class GenerateLinkResponse(BaseModel):
    token: str
    link: str
    kyc_request_id: int
    expires_at: datetime


class UploadResponse(BaseModel):
    url: str
    path: str


class OcrRequest(BaseModel):
    image_base64: Optional[str] = None
    image_url: Optional[str] = None
    document_type: Optional[str] = None


class SubmissionPayload(BaseModel):
    token: str = ""
    document_front_url: Optional[str] = None
    document_back_url: Optional[str] = None
    selfie_url: Optional[str] = None
    ocr_data_json: Optional[ExtractedFields] = None
    document_type: Optional[str] = None
    country: Optional[str] = None


class SubmissionReceipt(BaseModel):
    success: bool = True
    record_id: int
    message: str = "Verification submitted successfully"
    # False when the record was stored but the token could not be closed
    status_updated: bool = True


class VerificationRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kyc_request_id: int
    document_front_url: str
    document_back_url: Optional[str] = None
    selfie_url: str
    face_match_score: Optional[float] = None
    verification_status: str
    ocr_data_json: Optional[ExtractedFields] = None
    document_type: Optional[str] = None
    country: Optional[str] = None
    created_at: datetime


class KycRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    email: str
    status: str
    created_at: datetime
    expires_at: datetime
    record: Optional[VerificationRecordRead] = None


class RequestOverview(BaseModel):
    requests: List[KycRequestRead] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)
