import logging
import secrets as random_source
import string
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional, Union

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from cloudvault.errors import (
    ConflictError,
    NotFoundError,
    RotationDisabledError,
    RotationInProgressError,
    UnknownRotationTypeError,
    ValidationError,
)
from cloudvault.models import (
    SYSTEM_PRINCIPAL,
    RotationConfig,
    RotationState,
    RotationStatus,
    Secret,
    SecretAction,
    utc_now,
)
from cloudvault.storage.base import StorageBackend

if TYPE_CHECKING:
    from cloudvault.secrets.service import SecretsService

logger = logging.getLogger(__name__)

DEFAULT_PASSWORD_LENGTH = 32
DEFAULT_PASSWORD_CHARSET = string.ascii_lowercase + string.ascii_uppercase + string.digits + "!@#$%^&*"
DEFAULT_API_KEY_PREFIX = "ak_"


class RotationHandler(ABC):
    """Synthesizes a fresh credential value for a secret."""

    type: str = ""

    @abstractmethod
    def generate(self, secret: Secret) -> str:
        pass


class PasswordRotationHandler(RotationHandler):
    type = "password"

    def generate(self, secret: Secret) -> str:
        settings = secret.rotation_config.settings if secret.rotation_config else {}
        length = int(settings.get("length") or DEFAULT_PASSWORD_LENGTH)
        charset = settings.get("charset") or DEFAULT_PASSWORD_CHARSET
        return "".join(random_source.choice(charset) for _ in range(length))


class ApiKeyRotationHandler(RotationHandler):
    type = "api_key"

    def generate(self, secret: Secret) -> str:
        settings = secret.rotation_config.settings if secret.rotation_config else {}
        prefix = settings.get("prefix") or DEFAULT_API_KEY_PREFIX
        return f"{prefix}{random_source.token_hex(32)}"


class _CallableRotationHandler(RotationHandler):
    def __init__(self, type_: str, func: Callable[[Secret], str]) -> None:
        self.type = type_
        self.func = func

    def generate(self, secret: Secret) -> str:
        return self.func(secret)


class RotationHandlerRegistry:
    """Rotation types mapped to handlers. Bad registrations fail immediately."""

    def __init__(self, defaults: bool = True) -> None:
        self._handlers: dict[str, RotationHandler] = {}
        self._lock = threading.Lock()
        if defaults:
            self.register(PasswordRotationHandler())
            self.register(ApiKeyRotationHandler())

    def register(
        self,
        handler: Union[RotationHandler, Callable[[Secret], str]],
        type_: Optional[str] = None,
        replace: bool = False,
    ) -> RotationHandler:
        if not isinstance(handler, RotationHandler):
            if not callable(handler):
                raise ValidationError.from_messages(
                    "Invalid rotation handler", [("handler", "Handler must be callable")]
                )
            if not type_:
                raise ValidationError.from_messages(
                    "Invalid rotation handler", [("type", "A type is required for callable handlers")]
                )
            handler = _CallableRotationHandler(type_, handler)

        type_ = type_ or handler.type
        if not type_ or not isinstance(type_, str):
            raise ValidationError.from_messages(
                "Invalid rotation handler", [("type", "Rotation type must be a non-empty string")]
            )

        with self._lock:
            if type_ in self._handlers and not replace:
                raise ConflictError(f"A rotation handler for type '{type_}' is already registered")
            self._handlers[type_] = handler
        return handler

    def unregister(self, type_: str) -> None:
        with self._lock:
            self._handlers.pop(type_, None)

    def get(self, type_: str) -> Optional[RotationHandler]:
        with self._lock:
            return self._handlers.get(type_)

    def __contains__(self, type_: str) -> bool:
        return self.get(type_) is not None

    def types(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)


class RotationScheduler:
    """Per-secret rotation timers on an APScheduler thread pool.

    Each secret owns at most one one-shot job. A generation counter per secret
    makes :meth:`cancel_rotation` effective even against a job that is
    already being dispatched, and an in-flight set keeps a second rotation of
    the same secret from starting while one runs.
    """

    def __init__(
        self,
        storage: StorageBackend,
        registry: Optional[RotationHandlerRegistry] = None,
        max_workers: int = 4,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry or RotationHandlerRegistry()
        self.secrets: Optional["SecretsService"] = None

        self.scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )

        self._lock = threading.RLock()
        self._generations: dict[str, int] = {}
        self._next_runs: dict[str, datetime] = {}
        self._in_flight: set[str] = set()

    def bind(self, secrets_service: "SecretsService") -> None:
        self.secrets = secrets_service

    # lifecycle

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Rotation scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Rotation scheduler stopped")

    def restore_schedules(self) -> int:
        """Arm timers for every auto-rotating secret, e.g. after a restart."""
        count = 0
        now = utc_now()
        for secret in self.storage.find_secrets():
            config = secret.rotation_config
            if not config or not config.enabled or not config.auto_rotate:
                continue
            last = secret.last_rotated_at or secret.created_at
            run_at = max(last + timedelta(days=config.interval), now)
            self._arm(secret.id, run_at)
            count += 1
        return count

    # handlers

    def register_rotation_handler(
        self,
        type_: str,
        handler: Union[RotationHandler, Callable[[Secret], str]],
        replace: bool = False,
    ) -> RotationHandler:
        return self.registry.register(handler, type_=type_, replace=replace)

    def unregister_rotation_handler(self, type_: str) -> None:
        self.registry.unregister(type_)

    # scheduling

    @staticmethod
    def _job_id(secret_id: str) -> str:
        return f"rotate:{secret_id}"

    def _arm(self, secret_id: str, run_at: datetime) -> None:
        with self._lock:
            generation = self._generations.get(secret_id, 0) + 1
            self._generations[secret_id] = generation
            self._next_runs[secret_id] = run_at
            self.scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=run_at),
                args=[secret_id, generation],
                id=self._job_id(secret_id),
                name=f"Rotate secret {secret_id}",
                replace_existing=True,
            )
        logger.info("Scheduled rotation of secret %s at %s", secret_id, run_at.isoformat())

    def schedule_rotation(self, secret_id: str, config: RotationConfig) -> Optional[datetime]:
        self.cancel_rotation(secret_id)
        if not config.enabled or not config.auto_rotate:
            return None

        run_at = utc_now() + timedelta(days=config.interval)
        self._arm(secret_id, run_at)
        return run_at

    def cancel_rotation(self, secret_id: str) -> None:
        with self._lock:
            self._generations[secret_id] = self._generations.get(secret_id, 0) + 1
            scheduled = self._next_runs.pop(secret_id, None)
            try:
                self.scheduler.remove_job(self._job_id(secret_id))
            except JobLookupError:
                # already fired or never armed
                pass
        if scheduled:
            logger.debug("Cancelled rotation of secret %s", secret_id)

    def _fire(self, secret_id: str, generation: int) -> None:
        with self._lock:
            if self._generations.get(secret_id) != generation:
                return
            self._next_runs.pop(secret_id, None)

        try:
            if self.secrets is not None:
                self.secrets.rotate_secret(secret_id)
            else:
                self.rotate_secret(secret_id)
        except RotationInProgressError:
            logger.warning("Scheduled rotation of secret %s skipped: rotation already running", secret_id)
        except Exception:
            logger.exception("Scheduled rotation failed for secret %s", secret_id)
            self._rearm_after_failure(secret_id)

    def _rearm_after_failure(self, secret_id: str) -> None:
        try:
            secret = self.storage.get_secret(secret_id)
        except Exception:
            logger.exception("Could not reload secret %s to reschedule rotation", secret_id)
            return
        config = secret.rotation_config if secret else None
        with self._lock:
            already_armed = secret_id in self._next_runs
        if config and config.enabled and config.auto_rotate and not already_armed:
            self._arm(secret_id, utc_now() + timedelta(days=config.interval))

    # rotation

    def rotate_secret(self, secret_id: str, principal_id: str = SYSTEM_PRINCIPAL) -> Secret:
        secret = self.storage.get_secret(secret_id)
        if not secret:
            raise NotFoundError(f"Secret with ID {secret_id} not found")

        config = secret.rotation_config
        if not config or not config.enabled:
            raise RotationDisabledError(f"Rotation is not enabled for secret {secret_id}")

        handler = self.registry.get(config.type)
        if handler is None:
            raise UnknownRotationTypeError(f"No rotation handler found for type {config.type}")

        if self.secrets is None:
            raise RuntimeError("RotationScheduler is not bound to a SecretsService")

        with self._lock:
            if secret_id in self._in_flight:
                raise RotationInProgressError(f"Rotation already in progress for secret {secret_id}")
            self._in_flight.add(secret_id)
            generation = self._generations.get(secret_id, 0)

        try:
            new_value = handler.generate(secret)
            self.secrets.set_secret_value(
                secret_id, new_value, principal_id=principal_id, audit_action=SecretAction.ROTATE
            )
            try:
                rotated = self.storage.update_secret(secret_id, {"last_rotated_at": utc_now()})
            except NotFoundError:
                logger.warning("Secret %s was deleted while it was being rotated", secret_id)
                raise
        finally:
            with self._lock:
                self._in_flight.discard(secret_id)

        logger.info("Rotated secret %s to version %d", secret_id, rotated.version)
        self._rearm_after_rotation(rotated, generation)
        return rotated

    def _rearm_after_rotation(self, secret: Secret, generation: int) -> None:
        """Arm the next timer unless the schedule changed while the rotation ran.

        A cancel, a delete or a new rotation config bumps the generation, and
        that decision wins over the config read before the write.
        """
        config = secret.rotation_config
        if not config or not config.enabled or not config.auto_rotate:
            return
        with self._lock:
            if self._generations.get(secret.id, 0) != generation:
                logger.debug("Rotation schedule of secret %s changed mid-rotation, not re-arming", secret.id)
                return
            self._arm(secret.id, utc_now() + timedelta(days=config.interval))

    # status

    def get_rotation_status(self, secret_id: str) -> RotationStatus:
        secret = self.storage.get_secret(secret_id)
        if not secret:
            raise NotFoundError(f"Secret with ID {secret_id} not found")

        with self._lock:
            next_run = self._next_runs.get(secret_id)
            rotating = secret_id in self._in_flight

        if rotating:
            state = RotationState.ROTATING
        elif next_run is not None:
            state = RotationState.SCHEDULED
        else:
            state = RotationState.IDLE

        return RotationStatus(
            secret_id=secret_id,
            state=state,
            scheduled=next_run is not None,
            next_rotation=next_run,
            last_rotation=secret.last_rotated_at,
        )

    def list_pending_rotations(self) -> list[dict]:
        with self._lock:
            pending = sorted(self._next_runs.items(), key=lambda item: item[1])
        return [{"secret_id": sid, "scheduled_at": at} for sid, at in pending]

    def is_rotating(self, secret_id: str) -> bool:
        with self._lock:
            return secret_id in self._in_flight
