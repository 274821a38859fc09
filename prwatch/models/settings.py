"""User settings model."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import Theme

DEFAULT_REFRESH_INTERVAL_SECONDS = 300


class Settings(BaseModel):
    """User settings owned by the State Store.

    Instances are immutable; updates produce a new, fully validated copy
    through ``merged_with``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    credential: str | None = Field(
        default=None, description="GitHub token used for API requests"
    )

    refresh_interval_seconds: int = Field(
        default=DEFAULT_REFRESH_INTERVAL_SECONDS,
        ge=1,
        description="Seconds between the end of one poll cycle and the next",
    )

    notifications_enabled: bool = Field(
        default=True, description="Whether closed pull requests raise notifications"
    )

    theme: Theme = Field(default=Theme.SYSTEM, description="Presentation theme")

    @field_validator("credential")
    @classmethod
    def normalize_credential(cls, v: str | None) -> str | None:
        """Treat blank credentials as absent."""
        if v is None or v.strip() == "":
            return None
        return v.strip()

    @property
    def has_credential(self) -> bool:
        """Check if a credential is stored."""
        return self.credential is not None

    def merged_with(self, **changes: Any) -> "Settings":
        """Return a new validated Settings with ``changes`` applied.

        Raises:
            pydantic.ValidationError: If the resulting settings are invalid
        """
        data = self.model_dump()
        data.update(changes)
        return Settings.model_validate(data)

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks
        return (
            f"Settings(credential={'***' if self.credential else None}, "
            f"refresh_interval_seconds={self.refresh_interval_seconds}, "
            f"notifications_enabled={self.notifications_enabled}, "
            f"theme={self.theme.value})"
        )

    __str__ = __repr__
