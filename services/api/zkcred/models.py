from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer

from zkcred.utils import b64url, b64url_decode


def _coerce_bytes(value):
    if isinstance(value, str):
        return b64url_decode(value)
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return value


# Raw bytes in Python, unpadded base64url text in JSON.
B64Bytes = Annotated[
    bytes,
    BeforeValidator(_coerce_bytes),
    PlainSerializer(b64url, return_type=str, when_used="json"),
]

Policy = Dict[str, Any]


class CircuitParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_message_length: int = 1920
    max_b64_payload_length: int = 1900
    max_matches: int = 4
    max_substring_length: int = 50
    max_claims_length: int = 128

    @property
    def decoded_claim_length(self) -> int:
        return (self.max_claims_length * 3) // 4

    @classmethod
    def from_settings(cls, settings) -> "CircuitParams":
        return cls(
            max_message_length=settings.max_message_length,
            max_b64_payload_length=settings.max_b64_payload_length,
            max_matches=settings.max_matches,
            max_substring_length=settings.max_substring_length,
            max_claims_length=settings.max_claims_length,
        )


class CredentialMetadata(BaseModel):
    format: str = "sd-jwt"
    issuer: str
    subject: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    available_claims: List[str] = Field(default_factory=list)
    device_bound: bool = False


class ExtractedClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_binding_x: int = 0
    key_binding_y: int = 0
    age_claim: List[int]
    raw_claims: Dict[str, Any] = Field(default_factory=dict)


class CurrentDate(BaseModel):
    year: int
    month: int
    day: int


class PreparedState(BaseModel):
    """Holder-side result of the prepare phase. Never sent to a verifier."""

    id: str
    encrypted_credential: str
    metadata: CredentialMetadata
    claims: ExtractedClaims
    device_binding_key: Optional[Dict[str, str]] = None
    device_key_handle: Optional[str] = None
    prepare_proof: B64Bytes
    prepare_instance: B64Bytes
    prepare_witness: B64Bytes
    shared_blinds: B64Bytes
    created_at: int


class Proof(BaseModel):
    model_config = ConfigDict(frozen=True)

    prepare_proof: bytes
    show_proof: bytes
    shared_commitment: bytes
    policy: Policy
    nonce: str
    timestamp: int
    version: str


class SerializedProof(BaseModel):
    """JSON-safe wire form of a :class:`Proof`."""

    model_config = ConfigDict(populate_by_name=True)

    prepare_proof: str = Field(alias="prepareProof")
    show_proof: str = Field(alias="showProof")
    shared_commitment: str = Field(alias="sharedCommitment")
    policy: Policy
    nonce: str
    timestamp: int
    version: str


class VerificationResult(BaseModel):
    valid: bool
    error: Optional[str] = None
    verified_policy: Optional[Policy] = None
    timestamp: Optional[int] = None


class PrepareOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    format: str = "sd-jwt"
    issuer_public_key: Optional[Any] = None
    device_binding: bool = False
    device_key: Optional[Any] = None
    require_age_claim: bool = True


class ShowOptions(BaseModel):
    policy: Policy
    nonce: str
    current_date: Optional[CurrentDate] = None


class VerifyOptions(BaseModel):
    max_proof_age_ms: int = 5 * 60 * 1000
    expected_nonce: Optional[str] = None


class PrepareRequest(BaseModel):
    credential: str
    issuer_public_key: Dict[str, Any]
    device_binding: bool = False
    device_key: Optional[Dict[str, Any]] = None


class PrepareResponse(BaseModel):
    id: str
    metadata: CredentialMetadata


class ShowRequest(BaseModel):
    policy: Policy
    nonce: str
    current_date: Optional[CurrentDate] = None


class ChallengeResponse(BaseModel):
    nonce: str
    aud: str
    exp: int


class VerifyRequest(BaseModel):
    proof: SerializedProof
    expected_policy: Optional[Policy] = None
    aud: str


class CredentialsResponse(BaseModel):
    credentials: List[PrepareResponse]
