"""
Application configuration module.

Loads all configuration values from environment variables with the prefix
LICENSE_BOOTH_. Default values are provided for local development. A .env
file is also supported via pydantic-settings.

This module is the single source of truth for all runtime configuration
within the service process.  The admission queue and the API key pool read
their shared state from the backing store configured here; when no backing
store URL is set, both run in bypass mode.
"""

import pydantic
import pydantic_settings

DEFAULT_IMAGE_TRANSFORMATION_PROMPT = (
    "Transform this person into an astronaut portrait photo. "
    "Preserve the person's identity exactly: keep every facial feature, the "
    "hairstyle, hair colour and the facial expression unchanged so the result "
    "is recognisable as the same person. "
    "Frame a bust shot from mid-chest to the top of the head with balanced "
    "headroom; no helmet or visor, the face must be fully visible. "
    "Replace the clothing with a white professional astronaut suit with a red "
    "'SK' logo patch and a Korean flag patch embroidered on the chest, and "
    "realistic suit details such as zippers and life support connectors. "
    "Use a cosmic background with stars and a colourful nebula, professional "
    "studio lighting on the face and subtle rim lighting. "
    "Output a photorealistic, high-quality portrait."
)


class ApplicationConfiguration(pydantic_settings.BaseSettings):
    """
    Centralised configuration for the License Booth transform service.

    Every field maps to an environment variable prefixed with LICENSE_BOOTH_.
    For example, the field ``backing_store_url`` is populated from the
    environment variable LICENSE_BOOTH_BACKING_STORE_URL.

    Configuration categories
    ------------------------
    - **Application**: host, port, CORS, log level, rate limit
    - **Backing store (Redis)**: connection URL and access token
    - **Upstream credentials**: multi-value and single-value key sources,
      failure cooldown
    - **Admission queue**: concurrency ceiling, waiting TTL, processing
      TTL, wait estimate, poll interval, zombie reaping interval
    - **Upstream image API**: base URL, model, prompt, timeout, pool size
    - **Transform policy**: attempts per key, backoff, rotation cap
    - **Fallback job store**: progression pacing and maximum age
    - **Resilience**: retry-after durations, payload ceiling
    """

    # ── Application settings ─────────────────────────────────────────────

    application_host: str = "127.0.0.1"

    application_port: int = pydantic.Field(default=8000, ge=1, le=65535)

    cors_allowed_origins: list[str] = pydantic.Field(
        default=[],
        description=(
            "Allowed CORS origins as a JSON list. An empty list disables CORS "
            "entirely. Example: '[\"http://localhost:3000\"]'."
        ),
    )

    log_level: str = pydantic.Field(
        default="INFO",
        description=(
            "Minimum log level for structured JSON logging. "
            "Accepted values: DEBUG, INFO, WARNING, ERROR, CRITICAL."
        ),
    )

    rate_limit: str = pydantic.Field(
        default="30/minute",
        description=(
            "Per-IP rate limit for the transform and process endpoints. Uses "
            "the format 'count/period' where period is one of: second, "
            "minute, hour, day."
        ),
    )

    # ── Backing store settings ───────────────────────────────────────────

    backing_store_url: str = pydantic.Field(
        default="",
        description=(
            "Redis connection URL (for example 'rediss://host:6379'). When "
            "empty, the admission queue reports 'disabled' and admits every "
            "request, and the API key pool selects keys at random."
        ),
    )

    backing_store_token: str = pydantic.Field(
        default="",
        description=(
            "Access token for the backing store, sent as the Redis password. "
            "Leave empty when the URL already carries credentials."
        ),
    )

    # ── Upstream credential settings ─────────────────────────────────────

    google_api_keys: str = pydantic.Field(
        default="",
        description=(
            "Comma-separated list of upstream API keys. Takes precedence over "
            "the single-value google_api_key when non-empty."
        ),
    )

    google_api_key: str = pydantic.Field(
        default="",
        description="Single upstream API key used when google_api_keys is empty.",
    )

    api_key_failure_cooldown_seconds: int = pydantic.Field(
        default=60,
        ge=1,
        description=(
            "Number of seconds a key is excluded from normal selection after "
            "a rate-limit or authentication failure."
        ),
    )

    # ── Admission queue settings ─────────────────────────────────────────

    queue_maximum_concurrency: int = pydantic.Field(
        default=100,
        ge=1,
        description=(
            "Maximum number of transformations admitted concurrently across "
            "every service instance sharing the backing store."
        ),
    )

    queue_item_ttl_seconds: int = pydantic.Field(
        default=300,
        ge=1,
        description=(
            "Lifetime of a waiting entry. Entries older than this are dropped "
            "from the waiting set, covering clients that never call leave."
        ),
    )

    queue_maximum_processing_seconds: int = pydantic.Field(
        default=120,
        ge=1,
        description=(
            "Lifetime of the admission marker. In-flight entries whose marker "
            "has expired are removed by zombie reaping."
        ),
    )

    queue_estimated_seconds_per_item: int = pydantic.Field(
        default=10,
        ge=0,
        description="Per-item wait estimate shown to waiting clients.",
    )

    queue_poll_interval_seconds: int = pydantic.Field(
        default=5,
        ge=1,
        description="Status polling interval advertised to clients.",
    )

    zombie_reaping_interval_seconds: float = pydantic.Field(
        default=60.0,
        ge=0,
        description=(
            "Interval between background zombie reaping passes. Set to 0 to "
            "disable the background reaper."
        ),
    )

    # ── Upstream image API settings ──────────────────────────────────────

    image_api_base_url: str = pydantic.Field(
        default="https://generativelanguage.googleapis.com",
        description="Base URL of the generative image API.",
    )

    image_model_name: str = pydantic.Field(
        default="gemini-2.5-flash-image",
        description="Model used for the portrait transformation.",
    )

    image_transformation_prompt: str = pydantic.Field(
        default=DEFAULT_IMAGE_TRANSFORMATION_PROMPT,
        min_length=1,
        description="Instruction sent alongside the uploaded photo.",
    )

    timeout_for_image_api_requests_in_seconds: float = pydantic.Field(
        default=90.0,
        gt=0,
        description="Maximum duration of a single upstream call.",
    )

    image_api_connection_pool_size: int = pydantic.Field(
        default=20,
        ge=1,
        description="Maximum number of pooled connections to the upstream API.",
    )

    # ── Transform policy settings ────────────────────────────────────────

    transform_attempts_per_key: int = pydantic.Field(
        default=2,
        ge=1,
        description="Attempts made with one key on transient upstream errors.",
    )

    transform_retry_backoff_seconds: float = pydantic.Field(
        default=1.0,
        ge=0,
        description="Fixed wait between two attempts with the same key.",
    )

    transform_maximum_key_rotations: int = pydantic.Field(
        default=3,
        ge=0,
        description=(
            "Upper bound on key rotations per request. The effective bound "
            "is the smaller of this value and the number of configured keys."
        ),
    )

    # ── Fallback job store settings ──────────────────────────────────────

    job_progress_step_seconds: float = pydantic.Field(
        default=0.8,
        ge=0,
        description="Pause between progress updates of an in-memory job.",
    )

    job_maximum_age_seconds: int = pydantic.Field(
        default=86_400,
        ge=1,
        description="Jobs older than this are removed by the periodic cleanup.",
    )

    job_cleanup_interval_seconds: float = pydantic.Field(
        default=300.0,
        ge=0,
        description=(
            "Interval between background removals of old jobs. Independent "
            "of the zombie reaper. Set to 0 to disable job cleanup."
        ),
    )

    job_maximum_admission_wait_seconds: float = pydantic.Field(
        default=300.0,
        ge=0,
        description=(
            "How long a job waits for an admission slot while the queue is "
            "at its ceiling before it fails."
        ),
    )

    # ── Maintenance settings ─────────────────────────────────────────────

    admin_token: str = pydantic.Field(
        default="",
        description=(
            "Token expected in the X-Admin-Token header of the queue "
            "maintenance endpoints. When empty, those endpoints always "
            "answer HTTP 403."
        ),
    )

    # ── Resilience settings ──────────────────────────────────────────────

    retry_after_busy_seconds: int = pydantic.Field(
        default=5,
        ge=0,
        description=(
            "Retry-After value on HTTP 429 responses when admission to the "
            "transform queue is refused (error code: queue_full)."
        ),
    )

    retry_after_rate_limit_seconds: int = pydantic.Field(
        default=60,
        ge=0,
        description=(
            "Retry-After value on HTTP 429 responses when the per-IP rate "
            "limit is exceeded (error code: rate_limit_exceeded)."
        ),
    )

    retry_after_not_ready_seconds: int = pydantic.Field(
        default=10,
        ge=0,
        description="Retry-After value on HTTP 503 readiness responses.",
    )

    maximum_request_payload_bytes: int = pydantic.Field(
        default=15 * 1_048_576,
        ge=1,
        description=(
            "Maximum request payload size in bytes. Photos arrive as "
            "base64 data URLs, so the default allows roughly 11 MB images."
        ),
    )

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_prefix="LICENSE_BOOTH_",
    )
