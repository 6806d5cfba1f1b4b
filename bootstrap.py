import hashlib
import os

from jinja2 import Environment, FileSystemLoader, StrictUndefined, UndefinedError

from composition import ConfigurationError, Construct, concat, declare, derive_name
from config import BootstrapConfig, GcpProjectConfig, GitHubRepositoryConfig, require_fields
from gcpproject import GcpProject
from githubrepository import GitHubRepository

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")

WORKFLOW_TEMPLATES = {
    "pr": "infra_workflow_pr.yaml",
    "main": "infra_workflow_main.yaml",
}

PYTHON_VERSION = "3.12"

# Square brackets so GitHub Actions ${{ ... }} expressions pass through.
TEMPLATES = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    block_start_string="[%",
    block_end_string="%]",
    variable_start_string="[[",
    variable_end_string="]]",
    comment_start_string="[#",
    comment_end_string="#]",
)


def render_template(file_name: str, **variables: str) -> str:
    """Render a file from the templates directory with [[ name ]] style variables."""
    template = TEMPLATES.get_template(file_name)
    try:
        return template.render(**variables)
    except UndefinedError as e:
        raise ConfigurationError(file_name, f"no value for template variable: {e.message}") from e


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Bootstrap(Construct):
    """
    Bootstrapping for a new project.

    This creates
      - 3 GCP projects, all prefixed with the project name and hyphen
        - sysadmin: bootstrapping configuration and shared resources like domains
        - dev: development environment for the application
        - prod: production environment for the application
      - 2 GitHub repositories
        - monorepo: same name as the project, holds all application code
        - infra: prefixed with the project name and hyphen, holds infrastructure configuration
      - 1 GitHub team
        - admins: prefixed with the project name and hyphen, admin on all repositories
    """

    OUTPUTS = ("sysadmin_project", "dev_project", "prod_project", "app_repo", "infra_repo", "github_admins")

    def __init__(self, scope: Construct, config: BootstrapConfig):
        require_fields(config, "name", "organization_id", "billing_account_id", "github_org")
        super().__init__(scope, config.name)

        self.infra_repo_name = derive_name(config.name, "infra")
        github_infra_repo = f"{config.github_org}/{self.infra_repo_name}"

        def gcp_project(environment: str, github_environment: str) -> GcpProject:
            return GcpProject(
                self,
                GcpProjectConfig(
                    project_id=derive_name(config.name, environment),
                    organization_id=config.organization_id,
                    billing_account_id=config.billing_account_id,
                    github_infra_repo=github_infra_repo,
                    github_environment=github_environment,
                ),
            )

        self.sysadmin_project = gcp_project("sysadmin", "prod")
        self.dev_project = gcp_project("dev", "dev")
        self.prod_project = gcp_project("prod", "prod")

        self.github_admins = declare(
            self,
            "github.Team",
            "github-admins",
            {
                "name": derive_name(config.name, "admins"),
                "description": f"Administrators for the {config.name} project",
                "privacy": "closed",
            },
        )
        admin_team_id = self.github_admins.ref("id")

        self.app_repo = GitHubRepository(
            self,
            GitHubRepositoryConfig(
                name=config.name,
                admin_team=admin_team_id,
                repository_config=config.app_repository_config,
            ),
        )

        self.infra_repo = GitHubRepository(
            self,
            GitHubRepositoryConfig(
                name=self.infra_repo_name,
                admin_team=admin_team_id,
                repository_config=config.infra_repository_config,
                # reviewer teams are numeric ids
                prod_environment_config={"reviewers": [{"teams": [admin_team_id.apply(int)]}]},
            ),
        )

        if not config.disable_github_workflows:
            self._github_workflows(config)

        if config.domain:
            self._dns(config.domain)

    def _github_workflows(self, config: BootstrapConfig) -> None:
        for repo_name, repo in (("infra", self.infra_repo), ("app", self.app_repo)):
            for environment, project in (("dev", self.dev_project), ("prod", self.prod_project)):
                for attribute, variable in (("project_id", "ID"), ("number", "NUMBER")):
                    declare(
                        self,
                        "github.ActionsVariable",
                        f"gh-var-{repo_name}-gcp-project-{variable.lower()}-{environment}",
                        {
                            "repository": repo.repository.ref("name"),
                            "variable_name": f"GCP_PROJECT_{variable}_{environment.upper()}",
                            "value": project.project.ref(attribute),
                        },
                    )

        workflows = {
            key: render_template(
                file_name,
                name=config.name,
                identity_pool="github",
                python_version=PYTHON_VERSION,
            )
            for key, file_name in WORKFLOW_TEMPLATES.items()
        }

        # A new branch name whenever a workflow changes.
        branch_suffix = declare(
            self,
            "random.RandomString",
            "ci-branch-suffix",
            {
                "length": 16,
                "special": False,
                "keepers": {f"{key}_workflow": content_hash(content) for key, content in workflows.items()},
            },
        )

        infra_repository = self.infra_repo.repository.ref("name")
        ci_branch = declare(
            self,
            "github.Branch",
            "ci-branch",
            {"repository": infra_repository, "branch": concat("tf-", branch_suffix.ref("result"))},
        )

        workflow_files = [
            declare(
                self,
                "github.RepositoryFile",
                f"infra-ci-{key}",
                {
                    "repository": infra_repository,
                    "branch": ci_branch.ref("branch"),
                    "file": f".github/workflows/{key}.yaml",
                    "content": content,
                },
            )
            for key, content in workflows.items()
        ]

        # No data flows from the files to the pull request, only ordering.
        declare(
            self,
            "github.RepositoryPullRequest",
            "infra-ci-pr-apply",
            {
                "base_repository": infra_repository,
                "base_ref": ci_branch.ref("source_branch"),
                "head_ref": ci_branch.ref("branch"),
                "title": "Update CI workflows",
                "body": "This is an automated change to update CI workflows to the latest.",
            },
            depends_on=workflow_files,
        )

    def _dns(self, domain: str) -> None:
        zone_name = domain.replace(".", "-")

        alpha_zone = declare(
            self,
            "gcp.dns.ManagedZone",
            "alpha-dns-zone",
            {
                "project": self.dev_project.project.ref("project_id"),
                "name": derive_name("alpha", zone_name),
                "dns_name": f"alpha.{domain}.",
            },
            depends_on=[self.dev_project.dns_service],
        )

        prod_zone = declare(
            self,
            "gcp.dns.ManagedZone",
            "prod-dns-zone",
            {
                "project": self.prod_project.project.ref("project_id"),
                "name": zone_name,
                "dns_name": f"{domain}.",
            },
            depends_on=[self.prod_project.dns_service],
        )

        declare(
            self,
            "gcp.dns.RecordSet",
            "prod-alpha-ns-delegate",
            {
                "project": self.prod_project.project.ref("project_id"),
                "managed_zone": prod_zone.ref("name"),
                "name": f"alpha.{domain}.",
                "type": "NS",
                "rrdatas": alpha_zone.ref("name_servers"),
                "ttl": 21600,
            },
        )
