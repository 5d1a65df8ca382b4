from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ArtifactKind = Literal["raw-generated", "watermarked-preview", "assembled-pdf"]
JobStatus = Literal["pending", "succeeded", "failed", "timed-out"]


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ArtifactKind
    path: str  # file name inside the store
    created_at: float


class GenerationJob(BaseModel):
    prompt: Optional[str] = None
    input_image: Optional[bytes] = None
    external_job_id: Optional[str] = None
    status_url: Optional[str] = None
    status: JobStatus = "pending"
    attempts: int = 0
    error: Optional[str] = None

    @model_validator(mode="after")
    def _one_input(self):
        if (self.prompt is None) == (self.input_image is None):
            raise ValueError("exactly one of prompt or input_image must be set")
        return self

    @property
    def is_image_mode(self) -> bool:
        return self.input_image is not None


class DownloadToken(BaseModel):
    token: str
    target_url: str
    created_at: float
    expired: bool = False  # tombstone: expiry already observed


class Book(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    cover_image: Optional[str] = None
    pages: List[str] = Field(default_factory=list)
    download_url: Optional[str] = None


# Wire models


class GenerateRequest(BaseModel):
    prompt: Optional[str] = None


class GenerateResponse(BaseModel):
    output: str  # watermarked preview
    final: str  # purchasable original


class CheckoutRequest(BaseModel):
    images: List[str] = Field(default_factory=list)


class CheckoutResponse(BaseModel):
    sessionUrl: str


class CreateCheckoutSessionRequest(BaseModel):
    book: Optional[Book] = None


class CheckoutSessionResponse(BaseModel):
    url: str


class DownloadLinkRequest(BaseModel):
    downloadUrl: Optional[str] = None


class DownloadLinkResponse(BaseModel):
    link: str


class SessionDeliverable(BaseModel):
    downloadUrl: str
    coverImage: Optional[str] = None
