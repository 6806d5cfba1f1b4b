from composition import Construct, concat, declare, derive_name
from config import GcpProjectConfig, require_fields, split_github_repo

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"


def github_environment_member(pool, repo: str, environment: str):
    """IAM principal for GitHub actions running in an environment of repo."""
    return concat(
        "principal://iam.googleapis.com/",
        pool.ref("name"),
        f"/subject/repo:{repo}:environment:{environment}",
    )


class GcpProject(Construct):
    """
    A GCP project prepared to be managed by Terraform-style automation from
    GitHub actions: state bucket, workload identity federation for the infra
    repository, a KMS key for secrets, and admin / viewer service accounts.
    """

    OUTPUTS = (
        "project",
        "github_identity_pool",
        "terraform_admin_service_account",
        "terraform_viewer_service_account",
        "dns_service",
    )

    def __init__(self, scope: Construct, config: GcpProjectConfig):
        require_fields(
            config,
            "project_id",
            "organization_id",
            "billing_account_id",
            "github_infra_repo",
            "github_environment",
        )
        org_name, _ = split_github_repo(config.github_infra_repo, "github_infra_repo")

        super().__init__(scope, config.project_id)

        self.project = declare(
            self,
            "gcp.organizations.Project",
            "this",
            {
                "project_id": config.project_id,
                "name": config.display_name or config.project_id,
                "org_id": config.organization_id,
                "billing_account": config.billing_account_id,
                "labels": {"firebase": "enabled"},
            },
            depends_on=config.depends_on,
        )
        project_id = self.project.ref("project_id")

        declare(self, "gcp.firebase.Project", "firebase", {"project": project_id})

        tfstate = declare(
            self,
            "gcp.storage.Bucket",
            "tfstate",
            {
                "project": project_id,
                "name": derive_name(config.project_id, "tfstate"),
                "location": "US",
                "storage_class": "STANDARD",
                "versioning": {"enabled": True},
            },
        )

        # needed by some actions executed with a user account
        declare(
            self,
            "gcp.projects.Service",
            "resourcemanager",
            {"project": project_id, "service": "cloudresourcemanager.googleapis.com"},
        )

        iam = declare(self, "gcp.projects.Service", "iam", {"project": project_id, "service": "iam.googleapis.com"})

        self.dns_service = declare(
            self,
            "gcp.projects.Service",
            "dns-service",
            {"project": project_id, "service": "dns.googleapis.com"},
        )

        # Ordering is complete but the pool can still fail right after project
        # creation; a second apply is the workaround.
        self.github_identity_pool = declare(
            self,
            "gcp.iam.WorkloadIdentityPool",
            "github-id-pool",
            {"project": project_id, "workload_identity_pool_id": "github"},
            depends_on=[iam],
        )

        id_provider = declare(
            self,
            "gcp.iam.WorkloadIdentityPoolProvider",
            "github-id-provider",
            {
                "project": project_id,
                "workload_identity_pool_provider_id": "github",
                "workload_identity_pool_id": self.github_identity_pool.ref("workload_identity_pool_id"),
                "attribute_mapping": {
                    "google.subject": "assertion.sub",
                    "attribute.actor": "assertion.actor",
                    "attribute.repository": "assertion.repository",
                    "attribute.repository_owner": "assertion.repository_owner",
                },
                "attribute_condition": f"assertion.repository_owner == '{org_name}'",
                "oidc": {"issuer_uri": GITHUB_OIDC_ISSUER},
            },
        )

        self.export(derive_name(config.project_id, "github-identity-provider"), id_provider.ref("name"))

        kms_service = declare(
            self,
            "gcp.projects.Service",
            "kms-service",
            {"project": project_id, "service": "cloudkms.googleapis.com"},
        )

        keyring = declare(
            self,
            "gcp.kms.KeyRing",
            "terraform-keyring",
            {"project": project_id, "name": "terraform", "location": "global"},
            depends_on=[kms_service],
        )

        terraform_key = declare(
            self,
            "gcp.kms.CryptoKey",
            "terraform-key",
            {"key_ring": keyring.ref("id"), "name": "secrets"},
        )

        self.terraform_admin_service_account = declare(
            self,
            "gcp.serviceaccount.Account",
            "terraform-admin",
            {"project": project_id, "account_id": "terraform-admin"},
        )
        admin_member = self.terraform_admin_service_account.ref("member")

        declare(
            self,
            "gcp.projects.IAMMember",
            "terraform-admin-owner",
            {"project": project_id, "role": "roles/owner", "member": admin_member},
        )

        declare(
            self,
            "gcp.serviceaccount.IAMMember",
            "terraform-admin-github-actions",
            {
                "service_account_id": self.terraform_admin_service_account.ref("name"),
                "role": "roles/iam.serviceAccountTokenCreator",
                "member": github_environment_member(
                    self.github_identity_pool, config.github_infra_repo, config.github_environment
                ),
            },
        )

        self.terraform_viewer_service_account = declare(
            self,
            "gcp.serviceaccount.Account",
            "terraform-viewer",
            {"project": project_id, "account_id": "terraform-viewer"},
        )
        viewer_member = self.terraform_viewer_service_account.ref("member")

        for logical_id, role in (
            ("terraform-viewer-viewer", "roles/viewer"),
            ("terraform-viewer-serviceUser", "roles/serviceusage.serviceUsageConsumer"),
            ("terraform-viewer-key-secretaccess", "roles/secretmanager.secretAccessor"),
        ):
            declare(
                self,
                "gcp.projects.IAMMember",
                logical_id,
                {"project": project_id, "role": role, "member": viewer_member},
            )

        declare(
            self,
            "gcp.kms.CryptoKeyIAMMember",
            "terraform-viewer-key-decrypter",
            {
                "crypto_key_id": terraform_key.ref("id"),
                "role": "roles/cloudkms.cryptoOperator",
                "member": viewer_member,
            },
        )

        declare(
            self,
            "gcp.serviceaccount.IAMMember",
            "terraform-viewer-github-actions",
            {
                "service_account_id": self.terraform_viewer_service_account.ref("name"),
                "role": "roles/iam.serviceAccountTokenCreator",
                "member": github_environment_member(
                    self.github_identity_pool,
                    config.github_infra_repo,
                    derive_name(config.github_environment, "viewer"),
                ),
            },
        )

        # The viewer takes the state lock, which needs write access to the bucket.
        declare(
            self,
            "gcp.storage.BucketIAMMember",
            "terraform-viewer-tfstate",
            {
                "bucket": tfstate.ref("name"),
                "role": "roles/storage.objectUser",
                "member": viewer_member,
            },
        )
