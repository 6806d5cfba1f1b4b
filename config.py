"""
This module defines the configuration structures for each construct, plus the
loader for the YAML file the Pulumi program reads. Every construct has its own
hand-declared dataclass; defaults are merged by composition.merge_config.
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

import yaml

from composition import ConfigurationError

T = TypeVar("T")

CONFIG_SECTIONS = ("bootstrap", "curiostack")


@dataclass
class GcpProjectConfig:
    project_id: str
    organization_id: str
    billing_account_id: str
    # owner/repo of the repository deploying infrastructure with GitHub actions
    github_infra_repo: str
    # usually the suffix of the project, e.g. "dev" for "my-project-dev"
    github_environment: str
    display_name: Optional[str] = None
    depends_on: List[Any] = field(default_factory=list)


@dataclass
class GitHubRepositoryConfig:
    name: str
    admin_team: Optional[Any] = None
    # Each of these takes priority over the defaults of the matching resource.
    repository_config: Optional[Dict[str, Any]] = None
    main_ruleset_config: Optional[Dict[str, Any]] = None
    release_ruleset_config: Optional[Dict[str, Any]] = None
    dev_environment_config: Optional[Dict[str, Any]] = None
    dev_viewer_environment_config: Optional[Dict[str, Any]] = None
    prod_environment_config: Optional[Dict[str, Any]] = None
    prod_viewer_environment_config: Optional[Dict[str, Any]] = None


@dataclass
class CurioStackConfig:
    project: str
    location: str
    domain: str
    github_repo: str
    github_identity_pool_id: str = "github"
    # defaults to the suffix after `-` in the project ID
    github_environment: Optional[str] = None
    terraform_viewer_service_account_id: str = "terraform-viewer"


@dataclass
class CurioStackServiceConfig:
    name: str
    curiostack: Any
    image_tag: Optional[str] = None
    environment: Optional[str] = None
    public: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    websockets: bool = False
    # name -> {"secret": ..., "version": ...}
    env_secrets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    otel_collector_image: str = "otel/opentelemetry-collector-contrib:0.119.0"
    scaling: Optional[Dict[str, Any]] = None
    depends_on: List[Any] = field(default_factory=list)


@dataclass
class CurioStackHostingConfig:
    display_name: str
    curiostack: Any
    depends_on: List[Any] = field(default_factory=list)


@dataclass
class BootstrapConfig:
    name: str
    organization_id: str
    billing_account_id: str
    github_org: str
    domain: Optional[str] = None
    app_repository_config: Optional[Dict[str, Any]] = None
    infra_repository_config: Optional[Dict[str, Any]] = None
    disable_github_workflows: bool = False


def require_fields(config: Any, *names: str) -> None:
    for name in names:
        if not getattr(config, name, None):
            raise ConfigurationError(name, "is required")


def split_github_repo(value: str, field_name: str) -> Tuple[str, str]:
    owner, _, repo = (value or "").partition("/")
    if not owner or not repo or "/" in repo:
        raise ConfigurationError(field_name, f"'{value}' must be in the format owner/repo")
    return owner, repo


def build_config(cls: Type[T], data: Optional[Mapping[str, Any]], **extra: Any) -> T:
    """Build a config dataclass from a mapping, naming any missing or unknown field."""
    values = {**(data or {}), **extra}
    fields = {f.name: f for f in dataclasses.fields(cls)}

    unknown = sorted(set(values) - set(fields))
    if unknown:
        raise ConfigurationError(unknown[0], f"is not a field of {cls.__name__}")

    for name, f in fields.items():
        required = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        if required and name not in values:
            raise ConfigurationError(name, "is required")

    return cls(**values)


def load_config(file_path: str) -> Dict[str, Any]:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}

    if not isinstance(config_data, dict):
        raise ConfigurationError(file_path, "must contain a mapping")

    if not any(section in config_data for section in CONFIG_SECTIONS):
        raise ConfigurationError(" or ".join(CONFIG_SECTIONS), f"{file_path} must define at least one section")

    return config_data
