from enum import Enum
from typing import Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, Field

T = TypeVar("T")


class OperatingMode(str, Enum):
    AI_MODEL = "AI_MODEL"
    OWN_MODEL = "OWN_MODEL"
    FLAT_LAY = "FLAT_LAY"


class AppStatus(str, Enum):
    IDLE = "IDLE"
    GENERATING = "GENERATING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class ConversionOutcome(str, Enum):
    UNCHANGED = "unchanged"
    CONVERTED = "converted"
    PASSTHROUGH = "passthrough"


class NormalizedImage(BaseModel):
    id: str
    base64: str = Field(..., description="Base64 encoded image payload.")
    mime_type: str
    preview_url: str
    filename: Optional[str] = None
    conversion: ConversionOutcome = ConversionOutcome.UNCHANGED


class GenerationSettings(BaseModel):
    subject: str = ""       # Model description / arrangement
    action: str = ""        # Pose / composition
    surroundings: str = ""  # Background / surface
    style: str = ""         # Lighting / filter / mood


class ImageRole(str, Enum):
    PRODUCT = "product"
    PERSON = "person"


class ImagePart(BaseModel):
    mime_type: str
    data: str
    role: ImageRole = ImageRole.PRODUCT


class TextPart(BaseModel):
    text: str


class GenerationRequest(BaseModel):
    parts: List[Union[ImagePart, TextPart]]
    aspect_ratio: str

    @property
    def image_parts(self) -> List[ImagePart]:
        return [part for part in self.parts if isinstance(part, ImagePart)]

    @property
    def prompt(self) -> str:
        return self.parts[-1].text


class UserAccount(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    username: Optional[str] = None
    credits: int = 0
    # Identity token for the document store, never sent back to clients
    id_token: Optional[str] = Field(default=None, exclude=True)


class OutcomeStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


class Outcome(BaseModel, Generic[T]):
    """Result of a gateway call that may have fallen back instead of failing.

    ``degraded`` carries a usable fallback value and the reason it was used;
    ``failed`` carries only the reason.
    """

    status: OutcomeStatus
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, value=None):
        return cls(status=OutcomeStatus.OK, value=value)

    @classmethod
    def degraded(cls, value, reason: str):
        return cls(status=OutcomeStatus.DEGRADED, value=value, reason=reason)

    @classmethod
    def failed(cls, reason: str):
        return cls(status=OutcomeStatus.FAILED, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @property
    def is_degraded(self) -> bool:
        return self.status == OutcomeStatus.DEGRADED

    @property
    def is_failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


class CreditPackage(BaseModel):
    id: str
    name: str
    credits: int
    price: float
    popular: bool = False
    features: List[str] = []
