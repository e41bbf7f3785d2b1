from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Public base URL used in shareable verification links
    APP_URL: str = "http://localhost:8000"
    DATABASE_URL: str = "sqlite:///./kyc.db"

    # Artifact storage
    STORAGE_DIR: str = "./kyc-documents"
    STORAGE_PUBLIC_URL: str = "http://localhost:8000/files"

    # Token lifecycle
    TOKEN_TTL_DAYS: int = 7
    TOKEN_BYTES: int = 32

    # Upload derivation
    UPLOAD_MAX_EDGE: int = 2000
    UPLOAD_JPEG_QUALITY: int = 92

    # OCR derivation
    OCR_TARGET_EDGE: int = 1400
    OCR_CONTRAST_MIDPOINT: float = 128
    OCR_CONTRAST_SLOPE: float = 1.5
    OCR_JPEG_QUALITY: int = 95

    # Recognition
    OCR_BACKEND: str = "tesseract"
    OCR_LANGUAGE: str = "eng"
    OCR_PSM: int = 6
    OCR_TIMEOUT: float = 60
    # Below this mean confidence (0-100) results are flagged for manual review
    OCR_MIN_CONFIDENCE: float = 25
    RAW_TEXT_LIMIT: int = 500

    # OpenAI vision backend
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4.1-mini"

    # Session driver
    AUTO_ADVANCE_DELAY: float = 0.8
    HTTP_TIMEOUT: float = 30

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

# Document type configurations
DOCUMENT_CONFIGS = {
    "id_card": {
        "label": "National ID Card",
        "sides": ["front", "back"]
    },
    "driver_license": {
        "label": "Driver's License",
        "sides": ["front", "back"]
    },
    "passport": {
        "label": "Passport",
        "sides": ["main"]
    }
}

# Roles accepted by the artifact upload endpoint
ARTIFACT_ROLES = ("front", "back", "main", "selfie")

SIDE_LABELS = {
    "front": "Front Side",
    "back": "Back Side",
    "main": "Photo Page",
    "selfie": "Selfie"
}
