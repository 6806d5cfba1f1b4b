"""
Tests for the GcpProject construct
"""

import pytest

from composition import CompositionContext, ConfigurationError, Reference, declare
from config import GcpProjectConfig
from gcpproject import GcpProject


def make_config(**overrides):
    values = {
        "project_id": "acme-dev",
        "organization_id": "1234",
        "billing_account_id": "ABC-123",
        "github_infra_repo": "acme-inc/acme-infra",
        "github_environment": "dev",
    }
    values.update(overrides)
    return GcpProjectConfig(**values)


def compose(**overrides):
    context = CompositionContext()
    stack = context.stack("test")
    project = GcpProject(stack, make_config(**overrides))
    return project, context.finalize()


def test_project_resource():
    """The project itself carries ids, billing and the firebase label"""
    project, graph = compose(display_name="Acme Dev")

    assert project.project.path == "test/acme-dev/this"
    assert project.project.kind == "gcp.organizations.Project"
    assert project.project.config == {
        "project_id": "acme-dev",
        "name": "Acme Dev",
        "org_id": "1234",
        "billing_account": "ABC-123",
        "labels": {"firebase": "enabled"},
    }
    assert graph.order[0] == "test/acme-dev/this"


def test_display_name_defaults_to_project_id():
    project, _ = compose()

    assert project.project.config["name"] == "acme-dev"


def test_tfstate_bucket_name_is_derived():
    """The state bucket is named after the project"""
    _, graph = compose()

    bucket = graph.declaration("test/acme-dev/tfstate")
    assert bucket.config["name"] == "acme-dev-tfstate"
    assert bucket.config["versioning"] == {"enabled": True}
    assert bucket.config["project"] == Reference("test/acme-dev/this", "project_id")


def test_identity_pool_waits_for_iam_service():
    """The identity pool is explicitly ordered after the IAM API"""
    _, graph = compose()

    assert set(graph.predecessors("test/acme-dev/github-id-pool")) == {
        "test/acme-dev/this",
        "test/acme-dev/iam",
    }


def test_identity_provider_restricted_to_repo_owner():
    _, graph = compose()

    provider = graph.declaration("test/acme-dev/github-id-provider")
    assert provider.config["attribute_condition"] == "assertion.repository_owner == 'acme-inc'"
    assert provider.config["oidc"] == {"issuer_uri": "https://token.actions.githubusercontent.com"}
    assert "test/acme-dev/github-id-pool" in graph.predecessors(provider.path)


def test_identity_provider_is_exported():
    _, graph = compose()

    assert graph.exports["acme-dev-github-identity-provider"] == Reference(
        "test/acme-dev/github-id-provider", "name"
    )


def test_service_account_email_feeds_iam_bindings():
    """IAM bindings reference the service account they grant"""
    _, graph = compose()

    owner = graph.declaration("test/acme-dev/terraform-admin-owner")
    assert owner.config["member"] == Reference("test/acme-dev/terraform-admin", "member")
    assert owner.config["role"] == "roles/owner"
    assert graph.order.index("test/acme-dev/terraform-admin") < graph.order.index(owner.path)


def test_github_members_target_environments():
    """Admin is granted to the environment, viewer to its -viewer counterpart"""
    _, graph = compose()

    admin = graph.declaration("test/acme-dev/terraform-admin-github-actions")
    viewer = graph.declaration("test/acme-dev/terraform-viewer-github-actions")

    assert admin.config["member"].render() == (
        "principal://iam.googleapis.com/${test/acme-dev/github-id-pool.name}"
        "/subject/repo:acme-inc/acme-infra:environment:dev"
    )
    assert viewer.config["member"].render().endswith(":environment:dev-viewer")


def test_viewer_permissions():
    _, graph = compose()

    roles = {
        declaration.config.get("role")
        for declaration in graph.resources.values()
        if declaration.config.get("member") == Reference("test/acme-dev/terraform-viewer", "member")
    }

    assert roles == {
        "roles/viewer",
        "roles/serviceusage.serviceUsageConsumer",
        "roles/secretmanager.secretAccessor",
        "roles/cloudkms.cryptoOperator",
        "roles/storage.objectUser",
    }


def test_keyring_waits_for_kms_service():
    _, graph = compose()

    assert "test/acme-dev/kms-service" in graph.predecessors("test/acme-dev/terraform-keyring")
    assert graph.predecessors("test/acme-dev/terraform-key") == ("test/acme-dev/terraform-keyring",)


def test_caller_dependencies_apply_to_project():
    """Explicit dependencies order project creation"""
    context = CompositionContext()
    stack = context.stack("test")
    folder = declare(stack, "gcp.organizations.Folder", "folder")
    GcpProject(stack, make_config(depends_on=[folder]))

    graph = context.finalize()

    assert graph.predecessors("test/acme-dev/this") == ("test/folder",)


def test_outputs():
    project, _ = compose()

    assert set(project.outputs) == {
        "project",
        "github_identity_pool",
        "terraform_admin_service_account",
        "terraform_viewer_service_account",
        "dns_service",
    }


def test_invalid_repo_format():
    with pytest.raises(ConfigurationError) as exc_info:
        compose(github_infra_repo="acme-infra")

    assert exc_info.value.field == "github_infra_repo"


def test_missing_environment():
    with pytest.raises(ConfigurationError) as exc_info:
        compose(github_environment="")

    assert exc_info.value.field == "github_environment"
