import asyncio
import base64
import io
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import pytesseract
from openai import OpenAI, OpenAIError
from PIL import Image, UnidentifiedImageError

from config import settings, DOCUMENT_CONFIGS
from .fields import (
    ExtractedFields,
    FieldReport,
    build_report,
    extract_fields,
    normalize_document_number,
    sanitize_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    status: str
    progress: float = 0.0
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]

STATUS_MESSAGES = {
    "initializing tesseract": "Initialising...",
    "loading language traineddata": "Loading language data...",
    "initializing api": "Setting up scanner...",
    "recognizing text": "Scanning document...",
    "done": "Scan complete",
}


def progress_event(status: str, progress: float = 0.0) -> ProgressEvent:
    message = STATUS_MESSAGES.get(status, status)
    if status == "recognizing text":
        message = f"{message} {round(progress * 100)}%"
    return ProgressEvent(status=status, progress=progress, message=message)


@dataclass
class RecognitionResult:
    """
    Output of one recognition run. ok=False carries the reason in error
    and is handled exactly like an empty, low-confidence result.
    """

    ok: bool
    text: str = ""
    confidence: float = 0.0
    # Set by engines that return structured fields directly
    fields: Optional[ExtractedFields] = None
    error: Optional[str] = None
    engine: str = ""

    @classmethod
    def failure(cls, engine: str, error: str) -> "RecognitionResult":
        return cls(ok=False, error=error, engine=engine)


def _noop(event: ProgressEvent) -> None:
    pass


class RecognitionEngine(ABC):
    name = "engine"

    @abstractmethod
    def recognize(
        self, image: bytes, document_type: Optional[str], progress: ProgressCallback = _noop
    ) -> RecognitionResult:
        raise NotImplementedError


class TesseractEngine(RecognitionEngine):
    """
    Local recognition through the tesseract binary.
    PSM 6 assumes a uniform block of text, the best fit for full ID scans.
    """

    name = "tesseract"

    def __init__(
        self,
        language: str = settings.OCR_LANGUAGE,
        psm: int = settings.OCR_PSM,
        timeout: float = settings.OCR_TIMEOUT,
    ):
        self.language = language
        self.psm = psm
        self.timeout = timeout

    @property
    def tesseract_config(self) -> str:
        return f"--psm {self.psm} -c preserve_interword_spaces=1"

    @staticmethod
    def assemble(data: Dict[str, list]) -> tuple:
        """Rebuild line-ordered text and mean word confidence from image_to_data output"""
        lines: Dict[tuple, list] = {}
        confidences = []
        for i, word in enumerate(data.get("text", [])):
            try:
                conf = float(data["conf"][i])
            except (KeyError, IndexError, TypeError, ValueError):
                conf = -1.0
            if not str(word).strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(str(word))
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return text, confidence

    def recognize(
        self, image: bytes, document_type: Optional[str], progress: ProgressCallback = _noop
    ) -> RecognitionResult:
        progress(progress_event("initializing tesseract"))
        try:
            pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError:
            return RecognitionResult.failure(self.name, "tesseract binary not found on PATH")

        progress(progress_event("loading language traineddata"))
        try:
            img = Image.open(io.BytesIO(image))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            return RecognitionResult.failure(self.name, f"Unreadable raster: {e}")

        progress(progress_event("recognizing text", 0.0))
        try:
            data = pytesseract.image_to_data(
                img,
                lang=self.language,
                config=self.tesseract_config,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout,
            )
        except pytesseract.TesseractError as e:
            return RecognitionResult.failure(self.name, f"Tesseract error: {e}")
        except RuntimeError as e:
            # pytesseract signals its timeout with a bare RuntimeError
            return RecognitionResult.failure(self.name, f"Tesseract timed out: {e}")

        text, confidence = self.assemble(data)
        progress(progress_event("recognizing text", 1.0))
        return RecognitionResult(ok=True, text=text, confidence=confidence, engine=self.name)


class VisionEngine(RecognitionEngine):
    """
    Remote recognition through an OpenAI vision model, which returns the
    identity fields directly.
    """

    name = "openai"

    def __init__(self, client: Optional[OpenAI] = None, model: str = settings.OPENAI_MODEL):
        self._client = client
        self.model = model

    @property
    def client(self) -> OpenAI:
        # Built on first use; a missing API key surfaces as a recognition failure
        if self._client is None:
            self._client = OpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    def encode_image(self, image: bytes) -> str:
        """Encode image as base64 data URL"""
        return f"data:image/jpeg;base64,{base64.b64encode(image).decode('utf-8')}"

    def safe_json_parse(self, text: str) -> Dict[str, Any]:
        """Safely parse JSON from LLM response"""
        clean = re.sub(r"```(?:json)?", "", text or "", flags=re.IGNORECASE)
        match = re.search(r"\{.*\}", clean, re.DOTALL)
        if not match:
            raise ValueError("No JSON found in model output")
        return json.loads(match.group())

    def get_extraction_prompt(self, document_type: Optional[str]) -> str:
        """Phrase the extraction prompt for the document type"""
        label = DOCUMENT_CONFIGS.get(document_type or "", {}).get("label", "identity document")
        return f"""
You are an expert at reading {label} documents from any country.

Extract these fields from the document image:
1. Full Name - exactly as printed, including all name parts, surname first if shown
2. Date of Birth - convert to DD/MM/YYYY format
3. Document Number - the ID/passport/license number, include all letters and digits

IMPORTANT RULES:
- Return ONLY a raw JSON object. No markdown. No explanation.
- If a field cannot be read, return empty string ""
- For name: use ALL CAPS exactly as shown on the document
- For document number: copy exactly including any letters
- confidence is your overall reading confidence between 0 and 1

Expected format:
{{"name": "FULL NAME", "dob": "DD/MM/YYYY", "document_number": "XXXXXXXXX", "raw_text": "one line summary of document", "confidence": 0.0-1.0}}
"""

    @staticmethod
    def _to_confidence(val: Any) -> float:
        """Normalize a 0-1 or percentage confidence onto 0-100"""
        if val is None:
            return 0.0
        try:
            v = float(str(val).strip().replace('%', ''))
        except ValueError:
            return 0.0
        if v <= 1:
            v = v * 100.0
        return max(0.0, min(100.0, v))

    def recognize(
        self, image: bytes, document_type: Optional[str], progress: ProgressCallback = _noop
    ) -> RecognitionResult:
        progress(progress_event("initializing api"))
        prompt = self.get_extraction_prompt(document_type)

        progress(progress_event("recognizing text", 0.0))
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": self.encode_image(image)}},
                        ],
                    }
                ],
                max_tokens=300,
                temperature=0,
            )
            content = response.choices[0].message.content or ""
        except OpenAIError as e:
            return RecognitionResult.failure(self.name, f"Vision API error: {e}")

        try:
            parsed = self.safe_json_parse(content)
        except ValueError as e:
            logger.error("Failed to parse vision JSON: %s", content[:200])
            return RecognitionResult.failure(self.name, f"parse_error: {e}")

        raw_text = str(parsed.get("raw_text") or "").strip()
        fields = ExtractedFields(
            name=sanitize_name(str(parsed.get("name") or "")),
            dob=str(parsed.get("dob") or "").strip(),
            document_number=normalize_document_number(str(parsed.get("document_number") or "")),
            raw_text=raw_text[:settings.RAW_TEXT_LIMIT],
        )
        progress(progress_event("recognizing text", 1.0))
        return RecognitionResult(
            ok=True,
            text=raw_text,
            confidence=self._to_confidence(parsed.get("confidence")),
            fields=fields,
            engine=self.name,
        )


ENGINES = {
    TesseractEngine.name: TesseractEngine,
    VisionEngine.name: VisionEngine,
}


def get_engine(name: str = settings.OCR_BACKEND) -> RecognitionEngine:
    engine_cls = ENGINES.get(name)
    if engine_cls is None:
        raise ValueError(f"Unknown OCR backend: {name}")
    return engine_cls()


class OcrAdapter:
    """
    Runs recognition as an isolated, cancelable unit of work off the event
    loop. Progress events are handed back to the loop without blocking it.
    """

    def __init__(self, engine: Optional[RecognitionEngine] = None):
        self.engine = engine or get_engine()

    async def recognize(
        self,
        image: bytes,
        document_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RecognitionResult:
        loop = asyncio.get_running_loop()

        def report(event: ProgressEvent) -> None:
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, event)

        def run() -> RecognitionResult:
            try:
                return self.engine.recognize(image, document_type, report)
            except Exception as e:
                logger.exception("Recognition engine %s crashed", self.engine.name)
                return RecognitionResult.failure(self.engine.name, f"Recognition failed: {e}")

        if not image:
            return RecognitionResult.failure(self.engine.name, "No document image found")

        result = await asyncio.to_thread(run)
        if result.ok:
            logger.info("OCR via %s finished, confidence %.1f", result.engine, result.confidence)
        else:
            logger.warning("OCR via %s failed: %s", result.engine, result.error)
        report(progress_event("done", 1.0))
        return result

    async def read_fields(
        self,
        image: bytes,
        document_type: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FieldReport:
        """Recognize, extract and apply the confidence policy"""
        result = await self.recognize(image, document_type, on_progress)
        if not result.ok:
            return build_report(None, 0.0, ok=False, engine=result.engine)
        fields = result.fields or extract_fields(result.text, document_type)
        return build_report(fields, result.confidence, engine=result.engine)
