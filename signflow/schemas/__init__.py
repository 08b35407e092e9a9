from signflow.schemas.signatures import (
    SignatureRequestCreate,
    SignatureRequestResponse,
    SignerCreate,
    SignerResponse,
    SignatureSubmit,
    SignatureDecline,
    VerificationResponse,
)
