"""
CurioStack: the shared application platform inside a GCP project (container
registries, Cloud Run deployment permissions for GitHub, identity platform),
plus the constructs that deploy services and Firebase hosting onto it.
"""

import os

from composition import ConfigurationError, Construct, concat, declare, derive_name, environment_suffix, normalize_name
from config import (
    CurioStackConfig,
    CurioStackHostingConfig,
    CurioStackServiceConfig,
    require_fields,
    split_github_repo,
)
from gcpproject import github_environment_member

OTEL_CONFIG_FILE = "otel-config-default.yaml"
OTEL_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "otel", OTEL_CONFIG_FILE)

HEALTH_CHECK = {"path": "/internal/health", "port": 8080}


def read_otel_config() -> str:
    with open(OTEL_CONFIG_PATH, "r") as file:
        return file.read()


class CurioStack(Construct):
    OUTPUTS = (
        "project",
        "location",
        "docker_repository",
        "ghcr_repository",
        "github_environment_iam_member",
        "run_service",
        "otel_bucket",
    )

    def __init__(self, scope: Construct, config: CurioStackConfig):
        require_fields(config, "project", "location", "domain", "github_repo")
        split_github_repo(config.github_repo, "github_repo")
        self.github_environment = environment_suffix(config.project, config.github_environment, "github_environment")

        super().__init__(scope, "curiostack")

        self.config = config
        self.project = config.project
        self.location = config.location

        apps = Apps(self, config, self.github_environment)
        self.docker_repository = apps.docker_repository
        self.ghcr_repository = apps.ghcr_repository
        self.github_environment_iam_member = apps.github_environment_iam_member
        self.run_service = apps.run_service
        self.otel_bucket = apps.otel_bucket

        Identity(self, config)


class Apps(Construct):
    def __init__(self, scope: Construct, config: CurioStackConfig, github_environment: str):
        super().__init__(scope, "apps")
        project = config.project

        def service(logical_id: str, api: str):
            return declare(self, "gcp.projects.Service", logical_id, {"project": project, "service": api})

        artifact_registry_service = service("service-artifactregistry", "artifactregistry.googleapis.com")
        self.run_service = service("service-run", "run.googleapis.com")
        service("service-cloudtrace", "cloudtrace.googleapis.com")
        service("service-monitoring", "monitoring.googleapis.com")

        deployer_role = declare(
            self,
            "gcp.projects.IAMCustomRole",
            "cloudrun-deployer",
            {
                "project": project,
                "role_id": "cloudRunDeployer",
                "title": "Cloud Run Deployer",
                "permissions": [
                    "run.operations.get",
                    "run.services.create",
                    "run.services.get",
                    "run.services.update",
                ],
            },
        )

        github_id_pool = declare(
            self,
            "gcp.iam.WorkloadIdentityPool",
            "github-id-pool",
            {"project": project, "workload_identity_pool_id": config.github_identity_pool_id},
            existing=True,
        )

        self.github_environment_iam_member = github_environment_member(
            github_id_pool, config.github_repo, github_environment
        )

        self.docker_repository = declare(
            self,
            "gcp.artifactregistry.Repository",
            "docker-registry",
            {
                "project": project,
                "repository_id": "docker",
                "location": config.location,
                "format": "DOCKER",
            },
            depends_on=[artifact_registry_service],
        )

        declare(
            self,
            "gcp.projects.IAMMember",
            "github-cloudrun-deploy",
            {
                "project": project,
                "role": deployer_role.ref("name"),
                "member": self.github_environment_iam_member,
            },
        )

        declare(
            self,
            "gcp.artifactregistry.RepositoryIamMember",
            "docker-member-github",
            {
                "project": project,
                "repository": self.docker_repository.ref("name"),
                "location": self.docker_repository.ref("location"),
                "role": "roles/artifactregistry.writer",
                "member": self.github_environment_iam_member,
            },
        )

        # Cloud Run cannot pull from ghcr.io directly, so always provide a proxy.
        self.ghcr_repository = declare(
            self,
            "gcp.artifactregistry.Repository",
            "ghcr-repo",
            {
                "project": project,
                "repository_id": "ghcr",
                "location": config.location,
                "format": "DOCKER",
                "mode": "REMOTE_REPOSITORY",
                "remote_repository_config": {
                    "docker_repository": {"custom_repository": {"uri": "https://ghcr.io"}},
                },
            },
            depends_on=[artifact_registry_service],
        )

        self.otel_bucket = declare(
            self,
            "gcp.storage.Bucket",
            "otel-config",
            {
                "project": project,
                "name": derive_name(project, "otel-config"),
                "location": config.location,
                "uniform_bucket_level_access": True,
            },
        )

        declare(
            self,
            "gcp.storage.BucketObject",
            "otel-config-default",
            {
                "bucket": self.otel_bucket.ref("name"),
                "name": OTEL_CONFIG_FILE,
                "content": read_otel_config(),
            },
        )


class Identity(Construct):
    def __init__(self, scope: Construct, config: CurioStackConfig):
        super().__init__(scope, "identity")
        project = config.project

        service = declare(
            self,
            "gcp.projects.Service",
            "identitytoolkit",
            {"project": project, "service": "identitytoolkit.googleapis.com"},
        )

        declare(
            self,
            "gcp.identityplatform.Config",
            "identity-platform",
            {
                "project": project,
                # email sign in is needed for integration tests and QA accounts
                "sign_in": {"email": {"enabled": True}},
                "authorized_domains": [
                    "localhost",
                    config.domain,
                    f"{project}.web.app",
                    f"{project}.firebaseapp.com",
                ],
            },
            depends_on=[service],
        )

        # The viewer role cannot read Firebase client secrets; the values are
        # already visible to it through state.
        secret_viewer_role = declare(
            self,
            "gcp.projects.IAMCustomRole",
            "firebaseauth-config-secret-viewer",
            {
                "project": project,
                "title": "Firebase Auth Config Secret Viewer",
                "role_id": "firebaseauthConfigsSecretViewer",
                "permissions": ["firebaseauth.configs.getSecret"],
            },
        )

        declare(
            self,
            "gcp.projects.IAMMember",
            "terraform-viewer-firebase-secret",
            {
                "project": project,
                "role": secret_viewer_role.ref("name"),
                "member": f"serviceAccount:{config.terraform_viewer_service_account_id}@{project}.iam.gserviceaccount.com",
            },
        )


class CurioStackService(Construct):
    """
    A Cloud Run service running the application container with an
    OpenTelemetry collector sidecar.

    `service_account` executes the service; grant it access to anything the
    service needs.
    """

    OUTPUTS = ("run", "service_account")

    def __init__(self, scope: Construct, config: CurioStackServiceConfig):
        require_fields(config, "name", "curiostack")
        curiostack = config.curiostack
        project = curiostack.project
        config_env = environment_suffix(project, config.environment, "environment")

        super().__init__(scope, config.name)

        repository = curiostack.docker_repository
        image_name = concat(
            repository.ref("location"),
            "-docker.pkg.dev/",
            repository.ref("project"),
            "/",
            repository.ref("repository_id"),
            f"/{config.name}:{config.image_tag or 'main'}",
        )

        # TODO: restrict to internal traffic once Firebase hosting forwards requests.
        ingress = "INGRESS_TRAFFIC_ALL"

        self.service_account = declare(
            self,
            "gcp.serviceaccount.Account",
            "service-account",
            {"project": project, "account_id": derive_name("service", config.name)},
        )
        member = self.service_account.ref("member")

        for logical_id, role in (
            ("service-account-metrics", "roles/monitoring.metricWriter"),
            ("service-account-traces", "roles/cloudtrace.agent"),
            ("service-account-profiles", "roles/cloudprofiler.agent"),
        ):
            declare(self, "gcp.projects.IAMMember", logical_id, {"project": project, "role": role, "member": member})

        # Allow the GitHub repo to deploy.
        declare(
            self,
            "gcp.serviceaccount.IAMMember",
            "cloudrun-github",
            {
                "service_account_id": self.service_account.ref("name"),
                "role": "roles/iam.serviceAccountUser",
                "member": curiostack.github_environment_iam_member,
            },
        )

        depends_on = list(config.depends_on) + [curiostack.run_service]

        envs = [
            {"name": "CONFIG_ENV", "value": config_env},
            {"name": "GOOGLE_PROJECT", "value": project},
            {"name": "OTEL_METRICS_EXPORTER", "value": "otlp"},
            {"name": "OTEL_TRACES_EXPORTER", "value": "otlp"},
            {"name": "OTEL_SERVICE_NAME", "value": config.name},
        ]
        if config.public:
            envs.append({"name": "OTEL_TRACES_SAMPLER", "value": "always_on"})
        envs.append({"name": "LOGGING_JSON", "value": "true"})

        for name, value in config.env.items():
            envs.append({"name": name, "value": value})

        for name, secret in config.env_secrets.items():
            envs.append(
                {
                    "name": name,
                    "value_source": {
                        "secret_key_ref": {"secret": secret["secret"], "version": secret["version"]},
                    },
                }
            )
            depends_on.append(
                declare(
                    self,
                    "gcp.secretmanager.SecretIamMember",
                    f"secret-accessor-{name}",
                    {
                        "secret_id": secret["secret"],
                        "role": "roles/secretmanager.secretAccessor",
                        "member": member,
                    },
                )
            )

        otel_bucket = curiostack.otel_bucket.ref("name")
        depends_on.append(
            declare(
                self,
                "gcp.storage.BucketIAMMember",
                "otel-bucket-reader",
                {"bucket": otel_bucket, "role": "roles/storage.objectViewer", "member": member},
            )
        )

        template = {
            "execution_environment": "EXECUTION_ENVIRONMENT_GEN2",
            "service_account": self.service_account.ref("email"),
            "scaling": config.scaling or {"min_instance_count": 0, "max_instance_count": 1},
            "containers": [
                {
                    "image": image_name,
                    "name": "app",
                    "resources": {"cpu_idle": True, "startup_cpu_boost": True},
                    "startup_probe": {
                        "period_seconds": 1,
                        "failure_threshold": 10,
                        "initial_delay_seconds": 1,
                        "http_get": HEALTH_CHECK,
                    },
                    "liveness_probe": {
                        "period_seconds": 5,
                        "failure_threshold": 3,
                        "http_get": HEALTH_CHECK,
                    },
                    "envs": envs,
                    "ports": {"name": "http1" if config.websockets else "h2c", "container_port": 8080},
                },
                {
                    # No startup probe, the collector starts slowly and must not
                    # hold back the app container.
                    "image": config.otel_collector_image,
                    "name": "otel",
                    "args": ["--config", f"/otel/{OTEL_CONFIG_FILE}"],
                    "resources": {
                        "cpu_idle": True,
                        "startup_cpu_boost": True,
                        "limits": {"cpu": "1000m", "memory": "256Mi"},
                    },
                    "volume_mounts": [{"name": "otel", "mount_path": "/otel"}],
                },
            ],
            "volumes": [{"name": "otel", "gcs": {"bucket": otel_bucket, "read_only": True}}],
        }
        if config.websockets:
            template["timeout"] = "3600s"

        self.run = declare(
            self,
            "gcp.cloudrunv2.Service",
            "service",
            {
                "project": project,
                "name": config.name,
                "location": curiostack.location,
                "custom_audiences": [config.name],
                "ingress": ingress,
                "template": template,
            },
            depends_on=depends_on,
            # Without a pinned tag the image is deployed from outside.
            ignore_changes=None
            if config.image_tag
            else ["client", "clientVersion", "template.revision", "template.containers[0].image"],
        )

        if config.public:
            declare(
                self,
                "gcp.cloudrunv2.ServiceIamMember",
                "publicaccess",
                {
                    "project": project,
                    "location": self.run.ref("location"),
                    "name": self.run.ref("name"),
                    "role": "roles/run.invoker",
                    "member": "allUsers",
                },
            )


class CurioStackHosting(Construct):
    def __init__(self, scope: Construct, config: CurioStackHostingConfig):
        require_fields(config, "display_name", "curiostack")
        construct_id = normalize_name(config.display_name)
        if not construct_id:
            raise ConfigurationError("display_name", f"'{config.display_name}' must contain at least one letter or digit")
        super().__init__(scope, construct_id)

        curiostack = config.curiostack
        project = curiostack.project

        web_app = declare(
            self,
            "gcp.firebase.WebApp",
            "web-app",
            {"project": project, "display_name": config.display_name},
            depends_on=config.depends_on,
        )

        site = declare(
            self,
            "gcp.firebase.HostingSite",
            "hosting-site",
            {"project": project, "app_id": web_app.ref("app_id"), "site_id": project},
        )

        custom_domain = declare(
            self,
            "gcp.firebase.HostingCustomDomain",
            "custom-domain",
            {
                "project": project,
                "site_id": site.ref("site_id"),
                "custom_domain": curiostack.config.domain,
            },
        )

        self.export(derive_name(construct_id, "custom-domain-dns-updates"), custom_domain.ref("required_dns_updates"))

        # Firebase hosting forwards to Cloud Run and has to look services up.
        run_viewer_role = declare(
            self,
            "gcp.projects.IAMCustomRole",
            "cloudrun-viewer",
            {
                "project": project,
                "role_id": "cloudRunServiceViewer",
                "title": "Cloud Run Service Viewer",
                "permissions": ["run.services.get"],
            },
        )

        # Firebase does not support workload identity directly.
        firebase_deployer = declare(
            self,
            "gcp.serviceaccount.Account",
            "firebase-deployer",
            {"project": project, "account_id": "firebase-deployer"},
        )
        deployer_member = firebase_deployer.ref("member")

        declare(
            self,
            "gcp.projects.IAMMember",
            "firebase-deployer-hosting-admin",
            {"project": project, "role": "roles/firebasehosting.admin", "member": deployer_member},
        )

        declare(
            self,
            "gcp.projects.IAMMember",
            "firebase-deployer-cloudrun-viewer",
            {"project": project, "role": run_viewer_role.ref("name"), "member": deployer_member},
        )

        declare(
            self,
            "gcp.serviceaccount.IAMMember",
            "github-firebase-deployer",
            {
                "service_account_id": firebase_deployer.ref("name"),
                "role": "roles/iam.serviceAccountTokenCreator",
                "member": curiostack.github_environment_iam_member,
            },
        )
