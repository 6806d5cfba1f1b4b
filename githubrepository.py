from composition import Construct, declare, merge_config
from config import GitHubRepositoryConfig, require_fields

# RepositoryRole 5 is the built-in admin role.
ADMIN_BYPASS = [{"actor_type": "RepositoryRole", "actor_id": 5, "bypass_mode": "always"}]

REPOSITORY_DEFAULTS = {
    "auto_init": True,
    "vulnerability_alerts": True,
    "allow_merge_commit": False,
    "allow_squash_merge": True,
    "allow_rebase_merge": False,
    "squash_merge_commit_title": "PR_TITLE",
    "squash_merge_commit_message": "BLANK",
}

CUSTOM_BRANCH_POLICY = {"protected_branches": False, "custom_branch_policies": True}


class GitHubRepository(Construct):
    """
    A repository with squash-only merges, rulesets protecting the default and
    release branches, and dev / prod deployment environments (plus their
    read-only -viewer counterparts).
    """

    OUTPUTS = ("repository",)

    def __init__(self, scope: Construct, config: GitHubRepositoryConfig):
        require_fields(config, "name")
        super().__init__(scope, config.name)

        self.repository = declare(
            self,
            "github.Repository",
            "this",
            config.repository_config,
            defaults=merge_config(REPOSITORY_DEFAULTS, {"name": config.name}),
        )
        repository = self.repository.ref("name")

        if config.admin_team:
            declare(
                self,
                "github.TeamRepository",
                "admin-team",
                {"repository": repository, "team_id": config.admin_team, "permission": "admin"},
            )

        declare(
            self,
            "github.RepositoryRuleset",
            "main-ruleset",
            config.main_ruleset_config,
            defaults={
                "repository": repository,
                "name": "main",
                "enforcement": "active",
                "target": "branch",
                "conditions": {"ref_name": {"includes": ["~DEFAULT_BRANCH"], "excludes": []}},
                "bypass_actors": ADMIN_BYPASS,
                "rules": {
                    "deletion": True,
                    "required_linear_history": True,
                    "pull_request": {"required_approving_review_count": 1},
                    "non_fast_forward": True,
                },
            },
        )

        declare(
            self,
            "github.RepositoryRuleset",
            "release-ruleset",
            config.release_ruleset_config,
            defaults={
                "repository": repository,
                "name": "release",
                "enforcement": "active",
                "target": "branch",
                "conditions": {"ref_name": {"includes": ["refs/heads/release/*"], "excludes": []}},
                "bypass_actors": ADMIN_BYPASS,
                "rules": {
                    "creation": True,
                    "update": True,
                    "deletion": True,
                    "non_fast_forward": True,
                },
            },
        )

        declare(
            self,
            "github.RepositoryEnvironment",
            "env-dev-viewer",
            config.dev_viewer_environment_config,
            defaults={"repository": repository, "environment": "dev-viewer"},
        )

        for environment, branch_pattern, override in (
            ("dev", "main", config.dev_environment_config),
            ("prod-viewer", "release/*", config.prod_viewer_environment_config),
            ("prod", "release/*", config.prod_environment_config),
        ):
            self._protected_environment(environment, branch_pattern, override)

    def _protected_environment(self, environment: str, branch_pattern: str, override):
        repository = self.repository.ref("name")
        env = declare(
            self,
            "github.RepositoryEnvironment",
            f"env-{environment}",
            override,
            defaults={
                "repository": repository,
                "environment": environment,
                "can_admins_bypass": True,
                "deployment_branch_policy": CUSTOM_BRANCH_POLICY,
            },
        )
        declare(
            self,
            "github.RepositoryEnvironmentDeploymentPolicy",
            f"env-{environment}-policy",
            {
                "repository": repository,
                "environment": env.ref("environment"),
                "branch_pattern": branch_pattern,
            },
        )
        return env
