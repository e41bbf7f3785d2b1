"""
Verification session driver.

The wizard is modelled as a tagged state: one frozen dataclass per step,
each holding exactly the data that is guaranteed at that point. The
VerificationSession owns the current state and is the only thing that
replaces it, always moving forward:

    intro -> document_select -> document_upload -> ocr_confirm
          -> selfie -> face_match -> complete

Missing preconditions raise StepError and leave the state untouched.
Token lifecycle failures move the session to the terminal Failed state.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from config import settings, DOCUMENT_CONFIGS, SIDE_LABELS
from .client import KycGateway
from .errors import CaptureError, StepError, TokenError
from .fields import ExtractedFields, FieldReport, normalize_document_number, sanitize_name
from .ocr import OcrAdapter, ProgressCallback
from .preprocess import prepare_capture
from .schemas import SubmissionPayload

logger = logging.getLogger(__name__)


class Step(str, Enum):
    INTRO = "intro"
    DOCUMENT_SELECT = "document_select"
    DOCUMENT_UPLOAD = "document_upload"
    OCR_CONFIRM = "ocr_confirm"
    SELFIE = "selfie"
    FACE_MATCH = "face_match"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Identity:
    id: int
    first_name: str
    last_name: str
    email: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(frozen=True)
class ArtifactRef:
    role: str
    url: str


@dataclass(frozen=True)
class CapturedSide:
    artifact: ArtifactRef
    # OCR-optimized raster; kept in memory only, never uploaded
    ocr_image: bytes = field(repr=False)


def required_sides(document_type: str) -> Tuple[str, ...]:
    return tuple(DOCUMENT_CONFIGS[document_type]["sides"])


@dataclass(frozen=True)
class Intro:
    step: ClassVar[Step] = Step.INTRO
    identity: Identity


@dataclass(frozen=True)
class DocumentSelect:
    step: ClassVar[Step] = Step.DOCUMENT_SELECT
    identity: Identity
    country: str = ""
    document_type: Optional[str] = None


@dataclass(frozen=True)
class DocumentUpload:
    step: ClassVar[Step] = Step.DOCUMENT_UPLOAD
    identity: Identity
    country: str
    document_type: str
    captures: Mapping[str, CapturedSide] = field(default_factory=dict)

    @property
    def sides(self) -> Tuple[str, ...]:
        return required_sides(self.document_type)

    @property
    def missing_sides(self) -> List[str]:
        return [side for side in self.sides if side not in self.captures]

    @property
    def current_side(self) -> Optional[str]:
        missing = self.missing_sides
        return missing[0] if missing else None

    @property
    def is_complete(self) -> bool:
        return not self.missing_sides


@dataclass(frozen=True)
class OcrConfirm:
    step: ClassVar[Step] = Step.OCR_CONFIRM
    identity: Identity
    country: str
    document_type: str
    captures: Mapping[str, CapturedSide]
    report: Optional[FieldReport] = None

    @property
    def primary(self) -> CapturedSide:
        return self.captures.get("front") or self.captures["main"]


@dataclass(frozen=True)
class Selfie:
    step: ClassVar[Step] = Step.SELFIE
    identity: Identity
    country: str
    document_type: str
    front: ArtifactRef
    back: Optional[ArtifactRef]
    fields: ExtractedFields
    selfie: Optional[ArtifactRef] = None


@dataclass(frozen=True)
class FaceMatch:
    step: ClassVar[Step] = Step.FACE_MATCH
    identity: Identity
    country: str
    document_type: str
    front: ArtifactRef
    back: Optional[ArtifactRef]
    fields: ExtractedFields
    selfie: ArtifactRef


@dataclass(frozen=True)
class Complete:
    step: ClassVar[Step] = Step.COMPLETE
    identity: Identity
    record_id: int
    status_updated: bool = True


@dataclass(frozen=True)
class Failed:
    """Blocking screen: the link cannot be used any more."""

    step: ClassVar[Optional[Step]] = None
    message: str
    reason: str = "error"


SessionState = Union[Intro, DocumentSelect, DocumentUpload, OcrConfirm, Selfie, FaceMatch, Complete, Failed]

FAILURE_REASONS = {
    404: "not_found",
    409: "already_completed",
    410: "expired",
}


class VerificationSession:
    """
    Drives one token through the verification steps on a single event loop.
    """

    def __init__(
        self,
        token: str,
        gateway: KycGateway,
        ocr: Optional[OcrAdapter] = None,
        auto_advance_delay: float = settings.AUTO_ADVANCE_DELAY,
    ):
        self.token = token
        self.gateway = gateway
        self._ocr = ocr
        self.auto_advance_delay = auto_advance_delay
        self.state: Optional[SessionState] = None
        self._auto_advance: Optional[asyncio.Task] = None

    @property
    def ocr(self) -> OcrAdapter:
        if self._ocr is None:
            self._ocr = OcrAdapter()
        return self._ocr

    @property
    def step(self) -> Optional[Step]:
        return self.state.step if self.state is not None else None

    def _set(self, state: SessionState) -> SessionState:
        previous = self.step
        self.state = state
        if previous != state.step:
            logger.info("Session moved %s -> %s", previous, state.step or "failed")
        return state

    def _expect(self, *state_types):
        state = self.state
        if isinstance(state, state_types):
            return state
        if isinstance(state, Failed):
            raise StepError(state.message)
        if isinstance(state, Complete):
            raise StepError("This verification has already been submitted")
        current = state.step.value if state is not None else "not started"
        raise StepError(f"This action is not available at step '{current}'")

    def _fail(self, error: TokenError) -> None:
        reason = FAILURE_REASONS.get(error.status_code, "error")
        self.cancel_auto_advance()
        self._set(Failed(message=error.message, reason=reason))

    # ------------------------
    # Start / intro
    # ------------------------
    async def start(self) -> SessionState:
        """Validate the token; lifecycle failures end in the Failed state"""
        if self.state is not None:
            raise StepError("Session already started")
        if not self.token:
            return self._set(Failed(
                message="No verification token found. Please use the link provided to you.",
                reason="missing_token",
            ))

        try:
            data = await self.gateway.validate_token(self.token)
        except TokenError as e:
            self._fail(e)
            return self.state

        identity = Identity(
            id=int(data["id"]),
            first_name=str(data.get("first_name", "")),
            last_name=str(data.get("last_name", "")),
            email=str(data.get("email", "")),
        )
        return self._set(Intro(identity=identity))

    def begin(self) -> DocumentSelect:
        state = self._expect(Intro)
        return self._set(DocumentSelect(identity=state.identity))

    # ------------------------
    # Document selection
    # ------------------------
    def select_document(self, country: Optional[str] = None, document_type: Optional[str] = None) -> DocumentSelect:
        state = self._expect(DocumentSelect)
        if document_type is not None and document_type not in DOCUMENT_CONFIGS:
            raise StepError(f"Unknown document type: {document_type}")
        return self._set(replace(
            state,
            country=state.country if country is None else country.strip(),
            document_type=state.document_type if document_type is None else document_type,
        ))

    def _confirm_selection(self, state: DocumentSelect) -> DocumentUpload:
        if not state.country:
            raise StepError("Please select the country that issued your document")
        if not state.document_type:
            raise StepError("Please select a document type")
        # Captured sides always start empty for the chosen type's side set
        return self._set(DocumentUpload(
            identity=state.identity,
            country=state.country,
            document_type=state.document_type,
        ))

    # ------------------------
    # Document upload
    # ------------------------
    async def capture(
        self,
        side: str,
        data: bytes,
        filename: str = "capture.jpg",
    ) -> DocumentUpload:
        """
        Prepare both derivations of a photo, upload the stored copy and keep
        the OCR raster for the confirm step.
        """
        state = self._expect(DocumentUpload)
        if side not in state.sides:
            raise StepError(f"'{side}' is not required for this document")
        if side in state.captures:
            raise StepError(f"{SIDE_LABELS[side]} is already uploaded. Retake it to replace it.")

        pair = await prepare_capture(data)
        content_type = pair.upload.content_type
        if content_type == "application/octet-stream":
            content_type = "image/jpeg"

        try:
            url = await self.gateway.upload(self.token, side, pair.upload.content, filename, content_type)
        except TokenError as e:
            self._fail(e)
            raise

        # Re-read: other captures may have completed while this one was uploading
        state = self._expect(DocumentUpload)
        if side in state.captures:
            logger.warning("Overlapping capture for %s rejected, stored copy at %s is unused", side, url)
            raise StepError(f"{SIDE_LABELS[side]} is already uploaded. Retake it to replace it.")
        captures = dict(state.captures)
        captures[side] = CapturedSide(artifact=ArtifactRef(role=side, url=url), ocr_image=pair.ocr.content)
        state = self._set(replace(state, captures=captures))

        if state.is_complete:
            self._schedule_auto_advance()
        return state

    def retake(self, side: str) -> DocumentUpload:
        """Clear one side's artifacts; that side becomes the one to capture next"""
        state = self._expect(DocumentUpload)
        if side not in state.sides:
            raise StepError(f"'{side}' is not required for this document")
        self.cancel_auto_advance()
        captures = {s: c for s, c in state.captures.items() if s != side}
        return self._set(replace(state, captures=captures))

    def _schedule_auto_advance(self) -> None:
        self.cancel_auto_advance()
        self._auto_advance = asyncio.get_running_loop().create_task(self._advance_after_delay())

    async def _advance_after_delay(self) -> None:
        await asyncio.sleep(self.auto_advance_delay)
        state = self.state
        if isinstance(state, DocumentUpload) and state.is_complete:
            self._auto_advance = None
            self._finish_upload(state)

    def cancel_auto_advance(self) -> None:
        task = self._auto_advance
        self._auto_advance = None
        if task is not None and not task.done():
            task.cancel()

    @property
    def auto_advance_pending(self) -> bool:
        return self._auto_advance is not None and not self._auto_advance.done()

    def _finish_upload(self, state: DocumentUpload) -> OcrConfirm:
        missing = state.missing_sides
        if missing:
            labels = ", ".join(SIDE_LABELS[s] for s in missing)
            raise StepError(f"Please upload: {labels}")
        return self._set(OcrConfirm(
            identity=state.identity,
            country=state.country,
            document_type=state.document_type,
            captures=dict(state.captures),
        ))

    # ------------------------
    # OCR confirm
    # ------------------------
    async def scan(self, on_progress: Optional[ProgressCallback] = None) -> FieldReport:
        """Recognize the front (or main) side. Never fails: problems become an advisory."""
        state = self._expect(OcrConfirm)
        report = await self.ocr.read_fields(state.primary.ocr_image, state.document_type, on_progress)

        state = self._expect(OcrConfirm)
        self._set(replace(state, report=report))
        return report

    def accept_fields(self) -> Selfie:
        state = self._expect(OcrConfirm)
        if state.report is None:
            raise StepError("The document has not been scanned yet. Scan it or enter the details manually.")
        return self._confirm_fields(state, state.report.fields)

    def edit_fields(
        self,
        name: Optional[str] = None,
        dob: Optional[str] = None,
        document_number: Optional[str] = None,
    ) -> Selfie:
        """Persist user-entered values; anything not given keeps the detected value"""
        state = self._expect(OcrConfirm)
        detected = state.report.fields if state.report else ExtractedFields()
        fields = ExtractedFields(
            name=detected.name if name is None else sanitize_name(name),
            dob=detected.dob if dob is None else dob.strip(),
            document_number=(
                detected.document_number if document_number is None
                else normalize_document_number(document_number)
            ),
            raw_text=detected.raw_text,
        )
        return self._confirm_fields(state, fields)

    def _confirm_fields(self, state: OcrConfirm, fields: ExtractedFields) -> Selfie:
        back = state.captures.get("back")
        return self._set(Selfie(
            identity=state.identity,
            country=state.country,
            document_type=state.document_type,
            front=state.primary.artifact,
            back=back.artifact if back else None,
            fields=fields,
        ))

    # ------------------------
    # Selfie
    # ------------------------
    async def capture_selfie(
        self,
        data: bytes,
        filename: str = "selfie.jpg",
        content_type: str = "image/jpeg",
    ) -> Selfie:
        self._expect(Selfie)
        if not data:
            raise CaptureError("The selected file is empty. Please choose another image.")

        try:
            url = await self.gateway.upload(self.token, "selfie", data, filename, content_type)
        except TokenError as e:
            self._fail(e)
            raise

        state = self._expect(Selfie)
        return self._set(replace(state, selfie=ArtifactRef(role="selfie", url=url)))

    def _finish_selfie(self, state: Selfie) -> FaceMatch:
        if state.selfie is None:
            raise StepError("Please upload a selfie to continue")
        return self._set(FaceMatch(
            identity=state.identity,
            country=state.country,
            document_type=state.document_type,
            front=state.front,
            back=state.back,
            fields=state.fields,
            selfie=state.selfie,
        ))

    # ------------------------
    # Face match / submit
    # ------------------------
    def summary(self) -> List[Dict[str, object]]:
        """Checklist shown before submission. Identity verification is always a manual review."""
        state = self._expect(FaceMatch)
        return [
            {"label": "Document uploaded", "done": bool(state.front.url)},
            {"label": "Details confirmed", "done": not state.fields.is_empty()},
            {"label": "Selfie uploaded", "done": bool(state.selfie.url)},
            {"label": "Identity verification", "done": False, "pending": True},
        ]

    async def submit(self) -> Complete:
        """
        Hand everything collected to the service. A failed submit keeps the
        collected state so it can simply be called again.
        """
        state = self._expect(FaceMatch)
        payload = SubmissionPayload(
            token=self.token,
            document_front_url=state.front.url,
            document_back_url=state.back.url if state.back else None,
            selfie_url=state.selfie.url,
            ocr_data_json=state.fields,
            document_type=state.document_type,
            country=state.country,
        )

        try:
            receipt = await self.gateway.submit(payload)
        except TokenError as e:
            self._fail(e)
            raise

        if not receipt.status_updated:
            logger.warning("Record %s stored, token status update pending", receipt.record_id)
        return self._set(Complete(
            identity=state.identity,
            record_id=receipt.record_id,
            status_updated=receipt.status_updated,
        ))

    # ------------------------
    # Generic forward transition
    # ------------------------
    def advance(self) -> SessionState:
        """Confirm the current step and move to the next one"""
        state = self._expect(Intro, DocumentSelect, DocumentUpload, OcrConfirm, Selfie, FaceMatch)
        if isinstance(state, Intro):
            return self.begin()
        if isinstance(state, DocumentSelect):
            return self._confirm_selection(state)
        if isinstance(state, DocumentUpload):
            self.cancel_auto_advance()
            return self._finish_upload(state)
        if isinstance(state, OcrConfirm):
            return self.accept_fields()
        if isinstance(state, Selfie):
            return self._finish_selfie(state)
        raise StepError("Submit your verification to continue")
