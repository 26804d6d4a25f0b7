from .headers import AUDIT_HEADER_ALLOWLIST, MASK, MASKED_HEADERS, mask_headers, redact_secret_text

__all__ = [
    "AUDIT_HEADER_ALLOWLIST",
    "MASK",
    "MASKED_HEADERS",
    "mask_headers",
    "redact_secret_text",
]
