from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

from coursepay.core.errors import ConfigurationError

load_dotenv()

DELETED_SUBSCRIPTION_POLICIES = ("retain", "revoke")


class Settings(BaseSettings):
    PROJECT_NAME: str = "CoursePay"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"
    LOG_JSON: bool = False

    # Database (PostgreSQL in production; anything with INSERT ... ON CONFLICT works)
    DATABASE_URL: str = "sqlite:///./coursepay.db"

    # Caller tokens are issued by the auth platform; we only verify them
    SECRET_KEY: str = ""  # Must be set via environment variable
    ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str = ""  # e.g. "authenticated"; empty disables the audience check
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Frontend base URL used for default checkout redirects
    SITE_URL: str = ""

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET_TEST: str = ""
    STRIPE_WEBHOOK_SECRET_LIVE: str = ""
    STRIPE_EXTRA_WEBHOOK_SECRETS: str = ""  # "name=whsec_...,name2=whsec_..."
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Pricing
    DEFAULT_CURRENCY: str = "gbp"
    FALLBACK_PRICE_CENTS: int = 1999  # 0 disables the fallback price

    # What a deleted subscription does to access: "retain" keeps it, "revoke" removes it
    DELETED_SUBSCRIPTION_POLICY: str = "retain"

    # Comma-separated subject ids allowed to use the admin endpoints
    ADMIN_SUBJECT_IDS: str = ""

    CHECKOUT_RATE_LIMIT_PER_MINUTE: int = 5
    # Proxies whose X-Forwarded-For is trusted (comma-separated IPs or CIDRs, "*" for any)
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"

    # Error tracking (optional)
    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def admin_subject_ids(self) -> set[str]:
        return {s.strip() for s in self.ADMIN_SUBJECT_IDS.split(",") if s.strip()}

    def webhook_secrets(self) -> list[tuple[str, str]]:
        """
        Named webhook signing secrets in the order they should be tried.

        Staging and production deliveries share one endpoint, so the test secret
        is tried first, then the live one, then any extra secrets.
        """
        secrets: list[tuple[str, str]] = []
        if self.STRIPE_WEBHOOK_SECRET_TEST:
            secrets.append(("test", self.STRIPE_WEBHOOK_SECRET_TEST))
        if self.STRIPE_WEBHOOK_SECRET_LIVE:
            secrets.append(("live", self.STRIPE_WEBHOOK_SECRET_LIVE))

        for pair in self.STRIPE_EXTRA_WEBHOOK_SECRETS.split(","):
            pair = pair.strip()
            if not pair:
                continue
            name, sep, secret = pair.partition("=")
            if not sep or not name.strip() or not secret.strip():
                raise ConfigurationError(
                    "STRIPE_EXTRA_WEBHOOK_SECRETS entries must look like name=secret"
                )
            secrets.append((name.strip(), secret.strip()))

        return secrets

    def require(self, *names: str) -> None:
        """Raise ConfigurationError naming every listed setting that is empty."""
        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if self.DELETED_SUBSCRIPTION_POLICY not in DELETED_SUBSCRIPTION_POLICIES:
            raise ConfigurationError(
                f"DELETED_SUBSCRIPTION_POLICY must be one of {DELETED_SUBSCRIPTION_POLICIES}, "
                f"got {self.DELETED_SUBSCRIPTION_POLICY!r}"
            )


settings = Settings()
