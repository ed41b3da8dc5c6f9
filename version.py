"""Project version constants.

These constants are used in logs, the OpenAPI document and the AWS SDK
user agent so that requests and API clients can be traced back to a release.
"""

APP_NAME: str = "awsapp"
APP_VERSION: str = "0.2.0"

SCHEMA_VERSION: int = 5
