"""AWS SDK configuration shared by every boto3 client the console creates.

The SDK's own retry layer handles throttling inside a single call; the
orchestrator's ``services.retry.exponential_retry`` wraps whole operations.
"""

from botocore.config import Config

from infra.config import get_settings
from version import APP_NAME, APP_VERSION

_AWS_CFG = get_settings().aws

SDK_CONFIG = Config(
    retries={"max_attempts": int(_AWS_CFG.max_retries), "mode": "standard"},
    user_agent_extra=f"{APP_NAME}/{APP_VERSION}",
    connect_timeout=int(_AWS_CFG.connect_timeout),
    read_timeout=int(_AWS_CFG.timeout),
)

DEFAULT_REGION = _AWS_CFG.region_name

# The public pricing endpoint is only served from us-east-1 (and ap-south-1).
PRICING_REGION = "us-east-1"
