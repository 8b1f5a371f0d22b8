# Standard library (Python built-in modules)
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

# External library (Pre-installed in AWS Lambda runtime environment)
from botocore.client import BaseClient
from botocore.exceptions import ClientError

from secret_rotation.errors import AlreadyCurrent, CandidateConflict, MalformedPayload, NotFound

logger = logging.getLogger(__name__)

# Secrets Manager version stages
VERSION_STAGE_CURRENT = 'AWSCURRENT'
VERSION_STAGE_PENDING = 'AWSPENDING'

# Secrets Manager error codes
ERROR_RESOURCE_NOT_FOUND = 'ResourceNotFoundException'
ERROR_RESOURCE_EXISTS = 'ResourceExistsException'

# Keys with a dedicated CredentialRecord field; everything else goes to extras
_RECORD_KEYS = ('username', 'password', 'host', 'port', 'dbname', 'engine')


# ============================================================================
# Data Model
# ============================================================================

@dataclass(frozen=True)
class CredentialRecord:
    """Database credential as stored in a secret version's SecretString."""

    username: str
    password: str = field(repr=False)
    host: str
    port: Optional[int] = None
    dbname: Optional[str] = None
    engine: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def database_name(self) -> Optional[str]:
        # Some secrets use "database" instead of "dbname"
        return self.dbname or self.extras.get('database')

    def with_password(self, password: str) -> 'CredentialRecord':
        return dataclasses.replace(self, password=password)

    @classmethod
    def from_secret_string(cls, secret_string: str) -> 'CredentialRecord':
        """
        Purpose:
            Parse a SecretString into a CredentialRecord.

        Args:
            secret_string (str): JSON object with username, password, host, port?, dbname?

        Returns:
            CredentialRecord: Parsed record; unknown keys are kept in extras

        Raises:
            MalformedPayload: If the value is not a JSON object, a required field is
                missing or empty, or port is not an integer

        Example:
            {"engine": "postgres", "host": "db", "port": 5432, "username": "app", "password": "..."}
        """

        try:
            data = json.loads(secret_string)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Secret value is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MalformedPayload(f"Secret value must be a JSON object, got {type(data).__name__}")

        missing = [key for key in ('username', 'password', 'host') if not isinstance(data.get(key), str) or not data.get(key)]
        if missing:
            raise MalformedPayload(f"Secret value is missing required fields: {', '.join(missing)}")

        for key in ('dbname', 'database', 'engine'):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise MalformedPayload(f"Secret field '{key}' must be a string, got {type(data[key]).__name__}")

        return cls(
            username=data['username'],
            password=data['password'],
            host=data['host'],
            port=_parse_port(data.get('port')),
            dbname=data.get('dbname') or None,
            engine=data.get('engine') or None,
            extras={key: value for key, value in data.items() if key not in _RECORD_KEYS},
        )

    def to_secret_string(self) -> str:
        data = dict(self.extras)
        data.update({'username': self.username, 'password': self.password, 'host': self.host})
        if self.port is not None:
            data['port'] = self.port
        if self.dbname is not None:
            data['dbname'] = self.dbname
        if self.engine is not None:
            data['engine'] = self.engine
        return json.dumps(data, sort_keys=True)


def _parse_port(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise MalformedPayload(f"Invalid port: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise MalformedPayload(f"Invalid port: {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise MalformedPayload(f"Invalid port: {value!r}")
    if not 0 < port < 65536:
        raise MalformedPayload(f"Port out of range: {port}")
    return port


@dataclass(frozen=True)
class StageRegister:
    """
    The two label slots that drive rotation: which version holds AWSCURRENT
    and which holds AWSPENDING. Built from describe_secret's VersionIdsToStages,
    a mapping of version id to a list of stage labels:

        {
            "abc123-version-id-1": ["AWSCURRENT", "AWSPENDING"],
            "def456-version-id-2": ["AWSPREVIOUS"]
        }
    """

    current: Optional[str] = None
    pending: Optional[str] = None
    versions: Dict[str, List[str]] = field(default_factory=dict)

    def stages_of(self, version_id: str) -> List[str]:
        return self.versions.get(version_id, [])

    def has_version(self, version_id: str) -> bool:
        return version_id in self.versions

    @classmethod
    def from_version_stages(cls, version_stages: Any) -> 'StageRegister':
        if not isinstance(version_stages, Mapping):
            raise MalformedPayload(
                f"VersionIdsToStages must map version ids to stage lists, got {type(version_stages).__name__}"
            )

        versions = {}
        holders = {VERSION_STAGE_CURRENT: [], VERSION_STAGE_PENDING: []}
        for version_id, stages in version_stages.items():
            if not isinstance(version_id, str) or not isinstance(stages, (list, tuple)):
                raise MalformedPayload(f"Unexpected stage entry for version {version_id!r}: {stages!r}")
            versions[version_id] = list(stages)
            for label in holders:
                if label in stages:
                    holders[label].append(version_id)

        for label, version_ids in holders.items():
            if len(version_ids) > 1:
                raise MalformedPayload(f"Stage {label} is attached to several versions: {', '.join(sorted(version_ids))}")

        return cls(
            current=holders[VERSION_STAGE_CURRENT][0] if holders[VERSION_STAGE_CURRENT] else None,
            pending=holders[VERSION_STAGE_PENDING][0] if holders[VERSION_STAGE_PENDING] else None,
            versions=versions,
        )


# ============================================================================
# Credential Store Client
# ============================================================================
# Thin wrapper over the Secrets Manager API used by the rotation phases
#
# Methods:
#   - get_credential(): get_secret_value → CredentialRecord
#   - stage_register(): describe_secret → StageRegister
#   - put_candidate(): put_secret_value with AWSPENDING
#   - promote(): update_secret_version_stage for AWSCURRENT, then drop AWSPENDING

def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class CredentialStore:
    """Reads and writes versioned credential records in Secrets Manager."""

    def __init__(self, client: BaseClient):
        self.client = client

    def get_credential(
        self,
        secret_id: str,
        stage: str = VERSION_STAGE_CURRENT,
        version_id: Optional[str] = None
    ) -> CredentialRecord:
        """
        Purpose:
            Get the credential record carrying the given stage label.

        Args:
            secret_id (str): ARN or name of the secret
            stage (str, optional): Version stage (default: AWSCURRENT)
            version_id (str, optional): Also require this version id

        Returns:
            CredentialRecord: Parsed secret value

        Raises:
            NotFound: If no version carries the stage (or the version/stage pair)
            MalformedPayload: If the value has no SecretString or cannot be parsed
            ClientError: For any other Secrets Manager failure

        References:
            https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/secretsmanager/client/get_secret_value.html
        """

        params = {
            'SecretId': secret_id,
            'VersionStage': stage
        }
        if version_id is not None:
            params['VersionId'] = version_id

        try:
            response = self.client.get_secret_value(**params)
        except ClientError as e:
            if error_code(e) == ERROR_RESOURCE_NOT_FOUND:
                raise NotFound(f"No {stage} version found for secret {secret_id}"
                               + (f" with version {version_id}" if version_id else '')) from e
            logger.error(f"Error retrieving {stage} secret for {secret_id}: {e}")
            raise

        secret_string = response.get('SecretString')
        if secret_string is None:
            raise MalformedPayload(f"Secret {secret_id} ({stage}) did not return a SecretString")
        return CredentialRecord.from_secret_string(secret_string)

    def stage_register(self, secret_id: str) -> StageRegister:
        """Describe the secret and return which versions hold AWSCURRENT and AWSPENDING."""
        try:
            response = self.client.describe_secret(SecretId=secret_id)
        except ClientError as e:
            if error_code(e) == ERROR_RESOURCE_NOT_FOUND:
                raise NotFound(f"Secret {secret_id} does not exist") from e
            logger.error(f"Error describing secret {secret_id}: {e}")
            raise
        return StageRegister.from_version_stages(response.get('VersionIdsToStages', {}))

    def put_candidate(self, secret_id: str, version_id: str, record: CredentialRecord) -> None:
        """
        Purpose:
            Store a candidate credential as a new version labeled AWSPENDING.

        Args:
            secret_id (str): ARN or name of the secret
            version_id (str): Client request token, used as the version id
            record (CredentialRecord): Candidate credential

        Raises:
            CandidateConflict: If version_id already exists with different content
            ClientError: For any other Secrets Manager failure

        Note:
            Secrets Manager ignores a repeated put with the same token and value,
            so calling this twice is safe. Adding AWSPENDING here also removes it
            from any older version.
        """

        try:
            self.client.put_secret_value(
                SecretId=secret_id,
                ClientRequestToken=version_id,
                SecretString=record.to_secret_string(),
                VersionStages=[VERSION_STAGE_PENDING]
            )
        except ClientError as e:
            if error_code(e) == ERROR_RESOURCE_EXISTS:
                raise CandidateConflict(
                    f"Version {version_id} of secret {secret_id} already exists with a different value"
                ) from e
            logger.error(f"Error storing AWSPENDING version {version_id} for {secret_id}: {e}")
            raise
        logger.info(f"Stored AWSPENDING version {version_id} for secret {secret_id}")

    def promote(self, secret_id: str, version_id: str) -> None:
        """
        Purpose:
            Move AWSCURRENT to version_id and take AWSPENDING off it.

        Flow Summary:
            1. Read the stage register.
            2. If version_id already holds AWSCURRENT, clear a leftover AWSPENDING
               and raise AlreadyCurrent.
            3. Move AWSCURRENT from the current holder to version_id
               (Secrets Manager attaches AWSPREVIOUS to the old version).
            4. Remove AWSPENDING from version_id.

        Args:
            secret_id (str): ARN or name of the secret
            version_id (str): Version to promote

        Raises:
            AlreadyCurrent: If version_id already holds AWSCURRENT
            NotFound: If the secret or version_id does not exist
            MalformedPayload: If the stage metadata has an unexpected shape
            ClientError: For any other Secrets Manager failure

        References:
            https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/secretsmanager/client/update_secret_version_stage.html
        """

        register = self.stage_register(secret_id)
        if not register.has_version(version_id):
            raise NotFound(f"Version {version_id} does not exist for secret {secret_id}")

        if register.current == version_id:
            # An earlier promote may have stopped between the two label updates
            if VERSION_STAGE_PENDING in register.stages_of(version_id):
                self._remove_stage(secret_id, VERSION_STAGE_PENDING, version_id)
            raise AlreadyCurrent(f"Version {version_id} already holds {VERSION_STAGE_CURRENT} for secret {secret_id}")

        params = {
            'SecretId': secret_id,
            'VersionStage': VERSION_STAGE_CURRENT,
            'MoveToVersionId': version_id
        }
        if register.current is not None:
            params['RemoveFromVersionId'] = register.current
        try:
            self.client.update_secret_version_stage(**params)
        except ClientError as e:
            logger.error(f"Error moving {VERSION_STAGE_CURRENT} to {version_id} for {secret_id}: {e}")
            raise
        logger.info(f"Moved {VERSION_STAGE_CURRENT} from {register.current} to {version_id} for secret {secret_id}")

        if VERSION_STAGE_PENDING in register.stages_of(version_id):
            self._remove_stage(secret_id, VERSION_STAGE_PENDING, version_id)

    def _remove_stage(self, secret_id: str, stage: str, version_id: str) -> None:
        try:
            self.client.update_secret_version_stage(
                SecretId=secret_id,
                VersionStage=stage,
                RemoveFromVersionId=version_id
            )
        except ClientError as e:
            logger.error(f"Error removing {stage} from {version_id} for {secret_id}: {e}")
            raise
        logger.info(f"Removed {stage} from version {version_id} for secret {secret_id}")
