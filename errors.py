"""
Exception taxonomy for the asset tracker.

- ValidationFailure: a rule the store will not enforce was broken; raised
  before anything is written.
- DocumentNotFound: a write targeted a document that does not exist.
- AuthError: a login/signup/session failure, always carrying an AuthErrorCode.
- ProviderError: a raw error code from the identity provider; the session
  layer maps it onto AuthErrorCode.
"""

from enum import Enum
from typing import Optional


class AssetTrackError(Exception):
    pass


class ValidationFailure(AssetTrackError):
    pass


class DuplicateTagError(ValidationFailure):
    def __init__(self, tag_no: str, serial_number: str = ""):
        self.tag_no = tag_no
        self.serial_number = serial_number
        super().__init__(
            f'The tag "{tag_no}" is already assigned to another asset ({serial_number}).'
        )


class CompanyInUseError(ValidationFailure):
    def __init__(self, company_id: str):
        self.company_id = company_id
        super().__init__("This company cannot be deleted because it has assets associated with it.")


class EmployeeHasAssetsError(ValidationFailure):
    def __init__(self, employee_id: str, count: int):
        self.employee_id = employee_id
        self.count = count
        super().__init__(f"Employee still holds {count} asset(s). Return them first.")


class DocumentNotFound(AssetTrackError):
    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} not found")


class NotSignedIn(AssetTrackError):
    def __init__(self, message: str = "You must be logged in to update your profile."):
        super().__init__(message)


class AuthErrorCode(str, Enum):
    INVALID_CREDENTIALS = "invalid-credentials"
    ACCOUNT_NOT_ACTIVE = "account-not-active"
    RATE_LIMITED = "rate-limited"
    EMAIL_IN_USE = "email-in-use"
    WEAK_PASSWORD = "weak-password"
    UNKNOWN = "unknown"


AUTH_ERROR_MESSAGES = {
    AuthErrorCode.INVALID_CREDENTIALS: "Invalid email or password. Please check your credentials and try again.",
    AuthErrorCode.ACCOUNT_NOT_ACTIVE: "This account is pending activation by an administrator.",
    AuthErrorCode.RATE_LIMITED: (
        "Access to this account has been temporarily disabled due to many failed "
        "login attempts. Please try again later."
    ),
    AuthErrorCode.EMAIL_IN_USE: "This email address is already registered.",
    AuthErrorCode.WEAK_PASSWORD: "Password must be at least 6 characters long.",
    AuthErrorCode.UNKNOWN: "An authentication error occurred. Please try again later.",
}

# Raw provider codes -> the closed set above. Anything unlisted is UNKNOWN.
PROVIDER_CODE_MAP = {
    "auth/user-not-found": AuthErrorCode.INVALID_CREDENTIALS,
    "auth/wrong-password": AuthErrorCode.INVALID_CREDENTIALS,
    "auth/invalid-credential": AuthErrorCode.INVALID_CREDENTIALS,
    "auth/invalid-email": AuthErrorCode.INVALID_CREDENTIALS,
    "auth/user-not-active": AuthErrorCode.ACCOUNT_NOT_ACTIVE,
    "auth/too-many-requests": AuthErrorCode.RATE_LIMITED,
    "auth/email-already-in-use": AuthErrorCode.EMAIL_IN_USE,
    "auth/weak-password": AuthErrorCode.WEAK_PASSWORD,
}


def map_provider_code(code: Optional[str]) -> AuthErrorCode:
    return PROVIDER_CODE_MAP.get(code or "", AuthErrorCode.UNKNOWN)


class ProviderError(AssetTrackError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


class AuthError(AssetTrackError):
    def __init__(self, code: AuthErrorCode):
        self.code = code
        super().__init__(AUTH_ERROR_MESSAGES[code])

    @property
    def message(self) -> str:
        return AUTH_ERROR_MESSAGES[self.code]
