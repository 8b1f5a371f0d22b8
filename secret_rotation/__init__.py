"""Four-step rotation of database credentials stored in AWS Secrets Manager."""

from secret_rotation.handler import lambda_handler

__all__ = ['lambda_handler']
