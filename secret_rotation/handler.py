# Standard library (Python built-in modules)
import json
import logging
from typing import Any, Dict

# External library (Pre-installed in AWS Lambda runtime environment)
import boto3

from secret_rotation.config import RotationSettings
from secret_rotation.rotation import RotationCoordinator, RotationEvent
from secret_rotation.store import CredentialStore

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ============================================================================
# AWS Lambda Handler (First function called by AWS Secrets Manager)
# ============================================================================
# Entry point: lambda_handler()
#   → RotationCoordinator.run()
#   → Routes to: create_secret, set_secret, test_secret, finish_secret


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Purpose:
        Entry point for AWS Secrets Manager secret rotation.
        Sends the rotation request to the appropriate step handler.

    Flow Summary:
        1. Load settings from environment variables and apply LOG_LEVEL.
        2. Validate required event parameters (Step, SecretId, ClientRequestToken).
        3. Build the coordinator (Secrets Manager client, database sessions).
        4. Run the step and return a success response, or raise.

    Args:
        event (dict): Event data from AWS Secrets Manager
            Required keys:
                - Step: Rotation step (createSecret/setSecret/testSecret/finishSecret)
                - SecretId: ARN of the secret being rotated
                - ClientRequestToken: Unique version ID for this rotation
        context (object): Attributes and methods of Lambda function

    Returns:
        dict: Response with statusCode and body message

    Raises:
        InvalidEvent: If required event parameters are missing
        UnsupportedPhase: If Step is not a rotation step
        RotationError: If the step fails
        ClientError: For Secrets Manager failures

    References:
        https://docs.aws.amazon.com/secretsmanager/latest/userguide/rotate-secrets_lambda.html
        https://docs.aws.amazon.com/lambda/latest/dg/python-context.html

    Note:
        AWS Secrets Manager retries a failed step, so the same error may appear
        in logs several times. The raw event is never logged.
        A raised RotationError carries is_transient: True only for
        DatabaseConnectionError, where a later retry can succeed. Every other
        failure needs the secret, the database or the configuration fixed first.
    """

    log_event = {
        "Step": event.get("Step"),
        "SecretId": event.get("SecretId", "N/A"),
        "RequestId": getattr(context, "aws_request_id", "N/A") if context else "N/A"
    }
    logger.info(f"Rotation event received: {json.dumps(log_event)}")

    # ConfigurationError, InvalidEvent and UnsupportedPhase are all ValueErrors
    try:
        settings = RotationSettings.from_environ()
        logger.setLevel(settings.log_level)
        rotation_event = RotationEvent.from_lambda_event(event)
    except ValueError as e:
        logger.error(f"Rejected rotation event: {e}")
        raise

    coordinator = build_coordinator(settings)
    coordinator.run(rotation_event)

    step = rotation_event.phase.value
    logger.info(f"Successfully completed rotation step {step} for secret {rotation_event.secret_id}")
    return {"statusCode": 200, "body": f"Rotation step {step} completed successfully"}


def build_coordinator(settings: RotationSettings) -> RotationCoordinator:
    """Create a coordinator backed by a real Secrets Manager client."""
    # Credentials are retrieved in order: Environment variables → AWS config files → IAM role(Lambda execution role)
    client_kwargs = {}
    if settings.secrets_manager_endpoint:
        client_kwargs['endpoint_url'] = settings.secrets_manager_endpoint
    service_client = boto3.client('secretsmanager', **client_kwargs)
    return RotationCoordinator(CredentialStore(service_client), settings)
