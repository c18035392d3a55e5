"""File names and directories of the CA on disk."""

from pathlib import Path

from ..common.config import DirectorySettings
from ..common.models import Tier

CA_BASENAMES = {
    Tier.ROOT: "root-ca",
    Tier.INTERMEDIATE: "intermediate-ca",
}

LEAF_KEY = "server.key"
LEAF_CSR = "server.csr"
LEAF_CERT = "server.crt"
LEAF_FULLCHAIN = "server-fullchain.crt"


class PKILayout:
    """Resolves every path the CA reads or writes."""

    def __init__(self, dirs: DirectorySettings):
        self.dirs = dirs

    @property
    def output_dir(self) -> Path:
        return self.dirs.output_dir

    @property
    def server_certs_dir(self) -> Path:
        return self.dirs.server_certs_dir

    @property
    def k8s_export_dir(self) -> Path:
        return self.dirs.k8s_export_dir

    def tier_dir(self, tier: Tier) -> Path:
        if tier is Tier.ROOT:
            return self.dirs.root_ca_dir
        if tier is Tier.INTERMEDIATE:
            return self.dirs.intermediate_ca_dir
        return self.dirs.server_certs_dir

    def key_path(self, tier: Tier) -> Path:
        return self.tier_dir(tier) / f"{CA_BASENAMES[tier]}.key"

    def cert_path(self, tier: Tier) -> Path:
        return self.tier_dir(tier) / f"{CA_BASENAMES[tier]}.crt"

    def csr_path(self, tier: Tier) -> Path:
        return self.tier_dir(tier) / f"{CA_BASENAMES[tier]}.csr"

    @property
    def ca_chain_path(self) -> Path:
        return self.dirs.intermediate_ca_dir / "ca-chain.crt"

    def leaf_dir(self, directory_name: str) -> Path:
        return self.dirs.server_certs_dir / directory_name

    def create(self) -> None:
        for path in (
            self.dirs.output_dir,
            self.dirs.root_ca_dir,
            self.dirs.intermediate_ca_dir,
            self.dirs.server_certs_dir,
            self.dirs.k8s_export_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)
