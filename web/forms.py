"""
web/forms.py -- Pydantic v2 schemas for the auth form posts.

Validation failures never raise out of a route: form_errors() flattens a
ValidationError into {"field": ["message", ...]} and the route returns it as
{"errors": ...} with status 400 so the client can show messages per field.
Model-level problems (bad credentials, expired code) use the "" key.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

# ---------------------------------------------------------------------------
# Field types
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

Username = Annotated[str, Field(min_length=3, max_length=20, pattern=USERNAME_PATTERN)]
Password = Annotated[str, Field(min_length=6, max_length=100)]
Name = Annotated[str, Field(min_length=3, max_length=40)]
Email = Annotated[str, Field(min_length=3, max_length=100, pattern=EMAIL_PATTERN)]


class _Form(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


def _lower(value: str) -> str:
    return value.lower() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------


class LoginForm(_Form):
    username: Username
    password: Password
    remember: bool = False
    redirect_to: Optional[str] = Field(default=None, alias="redirectTo")

    normalize_username = field_validator("username", mode="after")(_lower)


class SignupForm(_Form):
    email: Email

    normalize_email = field_validator("email", mode="after")(_lower)


class VerifyForm(_Form):
    code: str = Field(min_length=6, max_length=6)
    type: Literal["onboarding", "reset-password"]
    target: str = Field(min_length=1)
    redirect_to: Optional[str] = Field(default=None, alias="redirectTo")


class ForgotPasswordForm(_Form):
    username_or_email: str = Field(min_length=1, max_length=100, alias="usernameOrEmail")


class _PasswordPair(_Form):
    password: Password
    confirm_password: str = Field(alias="confirmPassword")

    @model_validator(mode="after")
    def passwords_match(self) -> "_PasswordPair":
        if self.password != self.confirm_password:
            raise ValueError("The passwords must match")
        return self


class ResetPasswordForm(_PasswordPair):
    pass


class ProviderOnboardingForm(_Form):
    username: Username
    name: Name
    # Unchecked checkboxes are absent from the post, so the default is validated too.
    agree_to_terms: bool = Field(default=False, alias="agreeToTermsOfServiceAndPrivacyPolicy", validate_default=True)
    remember: bool = False
    redirect_to: Optional[str] = Field(default=None, alias="redirectTo")

    normalize_username = field_validator("username", mode="after")(_lower)

    @field_validator("agree_to_terms")
    @classmethod
    def must_agree(cls, value: bool) -> bool:
        if not value:
            raise ValueError("You must agree to the terms of service and privacy policy")
        return value


class OnboardingForm(ProviderOnboardingForm, _PasswordPair):
    pass


# ---------------------------------------------------------------------------
# Error flattening
# ---------------------------------------------------------------------------


def form_errors(exc: ValidationError) -> dict[str, list[str]]:
    """Flatten a ValidationError into {field_alias: [messages]}."""
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        field = str(err["loc"][0]) if err["loc"] else ""
        message = err["msg"].removeprefix("Value error, ")
        errors.setdefault(field, []).append(message)
    return errors
