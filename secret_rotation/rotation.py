# Standard library (Python built-in modules)
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, ContextManager, Dict, Mapping, Optional

from secret_rotation.config import RotationSettings
from secret_rotation.database import ConnectionParams, DatabaseSession, open_session
from secret_rotation.errors import (
    AlreadyCurrent,
    AuthenticationError,
    InvalidEvent,
    NotFound,
    RotationError,
    UnsupportedPhase,
)
from secret_rotation.password import generate_password
from secret_rotation.store import (
    VERSION_STAGE_CURRENT,
    VERSION_STAGE_PENDING,
    CredentialRecord,
    CredentialStore,
    StageRegister,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ConnectionParams], ContextManager[DatabaseSession]]

# ============================================================================
# Rotation Flow
# ============================================================================
# Step 1: createSecret
#   - Skip if the token already holds AWSPENDING (or AWSCURRENT)
#   - Copy AWSCURRENT, replace the password, store it as AWSPENDING under the token
#
# Step 2: setSecret
#   - Get AWSCURRENT and AWSPENDING secret values
#   - Skip if AWSPENDING already logs in
#   - Connect with AWSCURRENT (or the master secret) and change the
#     AWSPENDING user's password
#
# Step 3: testSecret
#   - Get AWSPENDING secret value
#   - Connect with it and run SELECT 1
#
# Step 4: finishSecret
#   - Skip if the token already holds AWSCURRENT
#   - Move AWSCURRENT to the token's version, drop AWSPENDING
#
# Nothing is kept between steps: every step rebuilds its inputs from the
# version stages in Secrets Manager, so any step can be re-delivered.


class Phase(Enum):
    CREATE = 'createSecret'
    SET = 'setSecret'
    TEST = 'testSecret'
    FINISH = 'finishSecret'

    @property
    def short_name(self) -> str:
        return self.value[:-len('Secret')]

    @classmethod
    def from_step(cls, step: Any) -> 'Phase':
        """Accept either the Secrets Manager step name or the short phase name."""
        for phase in cls:
            if step == phase.value or step == phase.short_name:
                return phase
        raise UnsupportedPhase(f"Unknown step: {step}")


@dataclass(frozen=True)
class RotationEvent:
    phase: Phase
    secret_id: str
    request_token: str

    @classmethod
    def from_lambda_event(cls, event: Mapping[str, Any]) -> 'RotationEvent':
        """
        Purpose:
            Parse the event sent by Secrets Manager.

        Example Event:
            {
                "Step": "createSecret",
                "SecretId": "arn:aws:secretsmanager:ap-northeast-1:123456789012:secret:MySecret-abc123",
                "ClientRequestToken": "e4bfd8c9-5b1a-4492-934d-2d7ac03ef6c5"
            }

        Raises:
            InvalidEvent: If Step, SecretId or ClientRequestToken is missing or empty
            UnsupportedPhase: If Step is not a known rotation step
        """

        try:
            step = event['Step']
            secret_id = event['SecretId']
            token = event['ClientRequestToken']
        except KeyError as e:
            raise InvalidEvent(f"Missing required event parameter: {e}")
        if not secret_id or not token:
            raise InvalidEvent("SecretId and ClientRequestToken must not be empty")
        return cls(phase=Phase.from_step(step), secret_id=secret_id, request_token=token)


# ============================================================================
# State derivation
# ============================================================================
# Pure decisions over (stage register, token); the coordinator performs them.

class CreateAction(Enum):
    PUT_CANDIDATE = 'put_candidate'
    SKIP = 'skip'


class FinishAction(Enum):
    PROMOTE = 'promote'
    ALREADY_CURRENT = 'already_current'
    CLEAR_PENDING = 'clear_pending'


def plan_create(register: StageRegister, token: str) -> CreateAction:
    if register.current is None:
        raise NotFound(f"No {VERSION_STAGE_CURRENT} version to rotate from")
    if token in (register.pending, register.current):
        return CreateAction.SKIP
    return CreateAction.PUT_CANDIDATE


def plan_finish(register: StageRegister, token: str) -> FinishAction:
    if register.current == token:
        # Promoted already; AWSPENDING left behind means the last promote was cut off
        return FinishAction.CLEAR_PENDING if register.pending == token else FinishAction.ALREADY_CURRENT
    if register.pending != token:
        raise NotFound(f"Version {token} does not hold {VERSION_STAGE_PENDING}")
    return FinishAction.PROMOTE


def build_candidate(current: CredentialRecord, password: str) -> CredentialRecord:
    # Connection fields (and any extra keys) come from AWSCURRENT unchanged
    return current.with_password(password)


# ============================================================================
# Rotation Coordinator
# ============================================================================

class RotationCoordinator:
    """Runs one rotation step against the credential store and the database."""

    def __init__(
        self,
        store: CredentialStore,
        settings: RotationSettings,
        session_factory: Optional[SessionFactory] = None,
        password_generator: Optional[Callable[[], str]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.settings = settings
        self.session_factory = session_factory or partial(open_session, settings=settings)
        self.password_generator = password_generator or partial(
            generate_password, settings.password_length, settings.exclude_characters
        )
        self.sleep = sleep

    def run(self, event: RotationEvent) -> None:
        """
        Purpose:
            Execute the step named by the event.

        Raises:
            RotationError: Any failure of the step, logged with step and secret first
            ClientError: Secrets Manager failures other than missing versions

        Note:
            There is no retry loop here. Secrets Manager re-invokes failed steps,
            which is safe because every step is idempotent.
        """

        handlers: Dict[Phase, Callable[[str, str], None]] = {
            Phase.CREATE: self.create_secret,
            Phase.SET: self.set_secret,
            Phase.TEST: self.test_secret,
            Phase.FINISH: self.finish_secret,
        }
        logger.info(f"Running {event.phase.value} for secret {event.secret_id} with token {event.request_token}")
        try:
            handlers[event.phase](event.secret_id, event.request_token)
        except RotationError as e:
            # Transient failures are expected to clear when Secrets Manager re-invokes the step
            log = logger.warning if e.is_transient else logger.error
            log(
                f"{type(e).__name__} ({'transient' if e.is_transient else 'permanent'}) in {event.phase.value} "
                f"for secret {event.secret_id}, token {event.request_token}: {e}"
            )
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error in {event.phase.value} for secret {event.secret_id}, "
                f"token {event.request_token}: {e}",
                exc_info=True
            )
            raise

    def create_secret(self, arn: str, token: str) -> None:
        """
        Purpose:
            Create a new secret version with AWSPENDING stage and a newly generated password.

        Flow Summary:
            1. Read the stage register; skip if the token is already staged.
            2. Get the AWSCURRENT secret value.
            3. Copy it with a new password.
            4. Store the copy as AWSPENDING with the token as version id.

        Note:
            A password is only generated when no version exists for the token,
            so a retried create never produces a second candidate.
        """

        register = self.store.stage_register(arn)
        if plan_create(register, token) is CreateAction.SKIP:
            logger.info(f"Version {token} already staged for secret {arn}, skipping create")
            return

        current = self.store.get_credential(arn, VERSION_STAGE_CURRENT)
        candidate = build_candidate(current, self.password_generator())
        self.store.put_candidate(arn, token, candidate)
        logger.info(f"Created AWSPENDING version {token} for secret {arn}")

    def set_secret(self, arn: str, token: str) -> None:
        """
        Purpose:
            Apply the AWSPENDING password to the database.

        Flow Summary:
            1. Get AWSCURRENT and AWSPENDING (for this token) secret values.
            2. Skip if the AWSPENDING credentials already log in.
            3. Connect as AWSCURRENT, or as the master secret's AWSCURRENT user
               when MASTER_SECRET_ARN is set.
            4. Change the AWSPENDING user's password.
            5. Wait DB_PASSWORD_PROPAGATION_WAIT seconds if configured.

        Raises:
            NotFound: If there is no AWSPENDING version for the token
            AuthenticationError: If the admin credentials are rejected

        Note:
            AWSCURRENT is still the trusted credential here, which is why it is
            only demoted in finish. Once the password is changed, AWSCURRENT no
            longer logs in for a single user; step 2 is what lets a re-delivered
            setSecret succeed.
        """

        current = self.store.get_credential(arn, VERSION_STAGE_CURRENT)
        pending = self.store.get_credential(arn, VERSION_STAGE_PENDING, version_id=token)

        if self._logs_in(pending):
            logger.info(f"AWSPENDING password for user '{pending.username}' is already set for secret {arn}, skipping")
            return

        admin = current
        if self.settings.master_secret_arn:
            master = self.store.get_credential(self.settings.master_secret_arn, VERSION_STAGE_CURRENT)
            logger.info(f"Using master user '{master.username}' to set password for secret {arn}")
            # Address comes from the rotated secret, credentials from the master secret
            admin = dataclasses.replace(current, username=master.username, password=master.password)

        params = ConnectionParams.from_record(admin, self.settings.default_engine)
        with self.session_factory(params) as session:
            session.set_password(pending.username, pending.password)
        logger.info(f"Applied AWSPENDING password for user '{pending.username}' of secret {arn}")

        wait_time = self.settings.propagation_wait
        if wait_time > 0:
            logger.info(f"Waiting {wait_time} seconds for database password change to propagate...")
            self.sleep(wait_time)

    def _logs_in(self, record: CredentialRecord) -> bool:
        # Only a rejected login means "not set yet"; connection errors propagate
        params = ConnectionParams.from_record(record, self.settings.default_engine)
        try:
            with self.session_factory(params) as session:
                session.probe()
        except AuthenticationError:
            return False
        return True

    def test_secret(self, arn: str, token: str) -> None:
        """Connect with the AWSPENDING credentials and run a probe query."""
        pending = self.store.get_credential(arn, VERSION_STAGE_PENDING, version_id=token)
        params = ConnectionParams.from_record(pending, self.settings.default_engine)
        with self.session_factory(params) as session:
            session.probe()
        logger.info(f"AWSPENDING version {token} of secret {arn} tested successfully")

    def finish_secret(self, arn: str, token: str) -> None:
        """
        Purpose:
            Complete the rotation by promoting AWSPENDING to AWSCURRENT.

        Version Stage Lifecycle:
            Before: Version-A (AWSCURRENT), Version-B (AWSPENDING)
            After:  Version-A (AWSPREVIOUS), Version-B (AWSCURRENT)

        Note:
            If the token already holds AWSCURRENT the step succeeds without
            touching any label, unless AWSPENDING is still attached to it, in
            which case promote() removes it.
        """

        register = self.store.stage_register(arn)
        if plan_finish(register, token) is FinishAction.ALREADY_CURRENT:
            logger.info(f"Version {token} of secret {arn} is already AWSCURRENT, skipping finish")
            return

        try:
            self.store.promote(arn, token)
        except AlreadyCurrent as e:
            # Another delivery of this step won the race
            logger.info(f"{e}, nothing to do")
            return
        logger.info(f"Rotation completed for secret {arn}: version {token} is now AWSCURRENT")
