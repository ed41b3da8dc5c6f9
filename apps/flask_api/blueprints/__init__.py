"""Flask API Blueprints package.

This package contains Flask Blueprint modules for each console area:
- health: Health checks and the OpenAPI document
- resources: Resource listings, prices and read-only instance views
- instances: Instance, image, spot, tag and DNS mutations
- storage: Volume, snapshot and ECR mutations
- iam: IAM users, groups and access keys
- host: systemd, crontab logs, noVNC, process info, public IP
- inbound_email: Inbound email and DMARC ingestion
"""

# Import blueprints for convenient registration
from apps.flask_api.blueprints.health import health_bp
from apps.flask_api.blueprints.host import host_bp
from apps.flask_api.blueprints.iam import iam_bp
from apps.flask_api.blueprints.inbound_email import inbound_email_bp
from apps.flask_api.blueprints.instances import instances_bp
from apps.flask_api.blueprints.resources import resources_bp
from apps.flask_api.blueprints.storage import storage_bp

__all__ = [
    "health_bp",
    "resources_bp",
    "instances_bp",
    "storage_bp",
    "iam_bp",
    "host_bp",
    "inbound_email_bp",
]
