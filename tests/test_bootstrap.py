"""
Tests for the Bootstrap construct
"""

import pytest

from bootstrap import Bootstrap, content_hash, render_template
from composition import CompositionContext, ConfigurationError, Reference
from config import BootstrapConfig


def make_config(**overrides):
    values = {
        "name": "acme",
        "organization_id": "1234",
        "billing_account_id": "ABC-123",
        "github_org": "acme-inc",
    }
    values.update(overrides)
    return BootstrapConfig(**values)


def compose(**overrides):
    context = CompositionContext()
    stack = context.stack("test")
    bootstrap = Bootstrap(stack, make_config(**overrides))
    return bootstrap, context.finalize()


def test_projects():
    """Three projects share the name prefix and the infra repo"""
    bootstrap, graph = compose()

    assert bootstrap.sysadmin_project.path == "test/acme/acme-sysadmin"
    assert bootstrap.dev_project.project.config["project_id"] == "acme-dev"
    assert bootstrap.prod_project.project.config["project_id"] == "acme-prod"

    provider = graph.declaration("test/acme/acme-dev/github-id-provider")
    assert provider.config["attribute_condition"] == "assertion.repository_owner == 'acme-inc'"
    admin = graph.declaration("test/acme/acme-sysadmin/terraform-admin-github-actions")
    assert admin.config["member"].render().endswith("repo:acme-inc/acme-infra:environment:prod")


def test_repositories_and_team():
    bootstrap, graph = compose()

    assert bootstrap.github_admins.config["name"] == "acme-admins"
    assert bootstrap.app_repo.repository.config["name"] == "acme"
    assert bootstrap.infra_repo.repository.config["name"] == "acme-infra"

    for repo in ("acme", "acme-infra"):
        team = graph.declaration(f"test/acme/{repo}/admin-team")
        assert team.config["team_id"] == Reference("test/acme/github-admins", "id")


def test_prod_environment_requires_admin_review():
    """The infra prod environment is reviewed by the admins team"""
    _, graph = compose()

    prod = graph.declaration("test/acme/acme-infra/env-prod")
    team_id = prod.config["reviewers"][0]["teams"][0]
    assert team_id == Reference("test/acme/github-admins", "id", (int,))
    assert "test/acme/github-admins" in graph.predecessors(prod.path)
    assert "reviewers" not in graph.declaration("test/acme/acme/env-prod").config


def test_repository_config_passthrough():
    bootstrap, _ = compose(app_repository_config={"visibility": "public"})

    assert bootstrap.app_repo.repository.config["visibility"] == "public"
    assert "visibility" not in bootstrap.infra_repo.repository.config


def test_actions_variables():
    """Both repos receive project ids and numbers for dev and prod"""
    _, graph = compose()

    variables = [d for d in graph.resources.values() if d.kind == "github.ActionsVariable"]
    assert len(variables) == 8

    number = graph.declaration("test/acme/gh-var-app-gcp-project-number-prod")
    assert number.config == {
        "repository": Reference("test/acme/acme/this", "name"),
        "variable_name": "GCP_PROJECT_NUMBER_PROD",
        "value": Reference("test/acme/acme-prod/this", "number"),
    }


def test_workflow_pull_request_waits_for_files():
    """The pull request is ordered after both workflow files without referencing them"""
    _, graph = compose()

    pull_request = graph.declaration("test/acme/infra-ci-pr-apply")
    assert set(pull_request.depends_on) == {"test/acme/infra-ci-pr", "test/acme/infra-ci-main"}
    for path in pull_request.depends_on:
        assert graph.order.index(path) < graph.order.index(pull_request.path)

    branch = graph.declaration("test/acme/ci-branch")
    assert branch.config["branch"].render() == "tf-${test/acme/ci-branch-suffix.result}"


def test_workflow_files_are_rendered():
    _, graph = compose()

    pr_file = graph.declaration("test/acme/infra-ci-pr")
    content = pr_file.config["content"]
    assert pr_file.config["file"] == ".github/workflows/pr.yaml"
    assert "Managed by the acme bootstrap" in content
    assert "${{ vars.GCP_PROJECT_ID_DEV }}" in content
    assert "workloadIdentityPools/github/providers/github" in content

    suffix = graph.declaration("test/acme/ci-branch-suffix")
    assert suffix.config["keepers"]["pr_workflow"] == content_hash(content)


def test_workflows_can_be_disabled():
    _, graph = compose(disable_github_workflows=True)

    kinds = {declaration.kind for declaration in graph.resources.values()}
    assert "github.ActionsVariable" not in kinds
    assert "github.RepositoryPullRequest" not in kinds


def test_dns_delegation():
    """The prod zone delegates alpha to the dev zone's name servers"""
    bootstrap, graph = compose(domain="acme.dev")

    alpha = graph.declaration("test/acme/alpha-dns-zone")
    assert alpha.config["name"] == "alpha-acme-dev"
    assert alpha.config["dns_name"] == "alpha.acme.dev."
    assert bootstrap.dev_project.dns_service.path in alpha.depends_on

    delegate = graph.declaration("test/acme/prod-alpha-ns-delegate")
    assert delegate.config["rrdatas"] == Reference(alpha.path, "name_servers")
    assert graph.order.index(alpha.path) < graph.order.index(delegate.path)


def test_no_dns_without_domain():
    _, graph = compose()

    assert not any(d.kind.startswith("gcp.dns.") for d in graph.resources.values())


def test_bootstrap_is_deterministic():
    """Two passes over the same config give byte-identical manifests"""
    _, first = compose(domain="acme.dev")
    _, second = compose(domain="acme.dev")

    assert first.to_yaml() == second.to_yaml()


def test_missing_name():
    with pytest.raises(ConfigurationError) as exc_info:
        compose(name="")

    assert exc_info.value.field == "name"


def test_render_template_requires_variables():
    with pytest.raises(ConfigurationError) as exc_info:
        render_template("infra_workflow_main.yaml", name="acme")

    assert exc_info.value.field == "infra_workflow_main.yaml"


def test_render_template_keeps_github_expressions():
    """GitHub Actions expressions pass through while variables are filled in"""
    content = render_template("infra_workflow_main.yaml", name="acme", identity_pool="github", python_version="3.12")

    assert content.startswith("# Managed by the acme bootstrap.")
    assert 'python-version: "3.12"' in content
    assert "environment: ${{ matrix.environment }}" in content
    assert "gs://${{ matrix.project_id }}-tfstate" in content
    assert "[[" not in content
    assert content.endswith("\n")
