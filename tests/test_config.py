"""
Tests for configuration loading and the stack composed from it
"""

import textwrap

import pytest

from composition import ConfigurationError
from config import CurioStackConfig, CurioStackServiceConfig, build_config, load_config, split_github_repo
from stacks import compose_stack


def write_config(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


def test_load_config(tmp_path):
    path = write_config(
        tmp_path,
        """
        curiostack:
          project: acme-dev
          location: us-central1
          domain: alpha.acme.dev
          github_repo: acme-inc/acme
        """,
    )

    config_data = load_config(path)

    assert config_data["curiostack"]["project"] == "acme-dev"


def test_load_config_requires_a_section(tmp_path):
    path = write_config(tmp_path, "other: {}\n")

    with pytest.raises(ConfigurationError) as exc_info:
        load_config(path)

    assert "bootstrap" in exc_info.value.field


def test_load_config_rejects_non_mapping(tmp_path):
    path = write_config(tmp_path, "- a\n- b\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_build_config_applies_defaults():
    config = build_config(
        CurioStackConfig,
        {"project": "acme-dev", "location": "us-central1", "domain": "acme.dev", "github_repo": "a/b"},
    )

    assert config.github_identity_pool_id == "github"
    assert config.github_environment is None
    assert config.terraform_viewer_service_account_id == "terraform-viewer"


def test_build_config_names_missing_field():
    """Missing required fields are reported by name"""
    with pytest.raises(ConfigurationError) as exc_info:
        build_config(CurioStackConfig, {"project": "acme-dev", "location": "us-central1", "domain": "acme.dev"})

    assert exc_info.value.field == "github_repo"


def test_build_config_rejects_unknown_field():
    with pytest.raises(ConfigurationError) as exc_info:
        build_config(CurioStackServiceConfig, {"name": "api", "replicas": 3}, curiostack=object())

    assert exc_info.value.field == "replicas"


def test_split_github_repo():
    assert split_github_repo("acme-inc/acme", "repo") == ("acme-inc", "acme")

    for value in ("acme", "acme/", "/acme", "a/b/c"):
        with pytest.raises(ConfigurationError):
            split_github_repo(value, "repo")


def test_compose_stack_from_config(tmp_path):
    """A config file with services and hosting composes into one graph"""
    path = write_config(
        tmp_path,
        """
        curiostack:
          project: acme-dev
          location: us-central1
          domain: alpha.acme.dev
          github_repo: acme-inc/acme
          services:
            - name: api
              public: true
            - name: worker
          hosting:
            display_name: Acme Web
        """,
    )

    graph = compose_stack(load_config(path), "dev")

    assert "dev/curiostack/apps/docker-registry" in graph.resources
    assert "dev/api/publicaccess" in graph.resources
    assert "dev/worker/service" in graph.resources
    assert "dev/worker/publicaccess" not in graph.resources
    assert "dev/acme-web/custom-domain" in graph.resources


def test_compose_stack_bootstrap(tmp_path):
    path = write_config(
        tmp_path,
        """
        bootstrap:
          name: acme
          organization_id: "1234"
          billing_account_id: ABC-123
          github_org: acme-inc
        """,
    )

    graph = compose_stack(load_config(path), "sysadmin")

    assert "sysadmin/acme/acme-prod/this" in graph.resources
    assert graph.order.index("sysadmin/acme/github-admins") < graph.order.index("sysadmin/acme/acme/admin-team")


def test_compose_stack_fails_on_missing_environment(tmp_path):
    path = write_config(
        tmp_path,
        """
        curiostack:
          project: acme
          location: us-central1
          domain: acme.dev
          github_repo: acme-inc/acme
        """,
    )

    with pytest.raises(ConfigurationError) as exc_info:
        compose_stack(load_config(path), "dev")

    assert exc_info.value.field == "github_environment"
