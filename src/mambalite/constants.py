"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    CONFIG_ERROR = 1
    CONNECTION_ERROR = 2
    CONFLICT = 3
    INTEGRITY_ERROR = 4
    EXECUTION_ERROR = 5


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PROG_NAME = "mambalite"
    VERSION = "0.4.0"
    USER_AGENT = f"mambalite/{VERSION}"

    CHANNEL_ALIAS = "https://conda.anaconda.org"
    DEFAULT_CHANNELS = ["conda-forge"]
    NOARCH_SUBDIR = "noarch"
    REPODATA_FN = "repodata.json"

    PKGS_DIRNAME = "pkgs"
    CACHE_DIRNAME = "cache"
    CONDA_META_DIRNAME = "conda-meta"
    TRASH_DIRNAME = ".trash"
    RC_FILENAME = ".mambarc"
    ENV_ROOT_PREFIX = "MAMBA_ROOT_PREFIX"
    ENV_TARGET_PREFIX = "CONDA_PREFIX"
    ENV_LOG_LEVEL = "MAMBALITE_LOG_LEVEL"

    # Placeholder baked into relocatable packages at build time
    PREFIX_PLACEHOLDER = "/opt/anaconda1anaconda2anaconda3"

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    DOWNLOAD_THREADS = 5
    EXTRACT_THREADS = 2
    CHUNK_SIZE = 64 * 1024

    # First existing bundle wins
    CA_BUNDLE_LOCATIONS = [
        "/etc/ssl/certs/ca-certificates.crt",  # Debian/Ubuntu/Gentoo etc.
        "/etc/pki/tls/certs/ca-bundle.crt",  # Fedora/RHEL 6
        "/etc/ssl/ca-bundle.pem",  # OpenSUSE
        "/etc/pki/tls/cacert.pem",  # OpenELEC
        "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem",  # CentOS/RHEL 7
        "/etc/ssl/cert.pem",  # Alpine Linux
    ]
