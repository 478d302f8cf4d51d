import os
import shutil
import logging


CURR_DIR = os.path.dirname(os.path.abspath(__file__))
BASE_DIR = os.environ.get("PROVISIONER_WORK_DIR", os.path.join(CURR_DIR, "tmp"))

# Please use binaries that match the version of the Fabric CA and peer containers
FABRIC_BIN_DIR = os.environ.get("FABRIC_BIN_DIR", os.path.join(CURR_DIR, "../fabric/bin"))
FABRIC_CA_CLIENT = os.path.join(FABRIC_BIN_DIR, "fabric-ca-client")
FABRIC_TOOLS_PEER = os.path.join(FABRIC_BIN_DIR, "peer")
# Directory holding the core.yaml used by the `peer` CLI
FABRIC_CFG_PATH = os.environ.get("FABRIC_CFG_PATH", os.path.join(CURR_DIR, "../fabric/config"))

DEFAULT_NETWORK_YAML = os.path.join(CURR_DIR, "network.yaml")
WALLET_DIR = os.environ.get("PROVISIONER_WALLET_DIR", os.path.join(CURR_DIR, "wallets"))

# Seconds to wait after the orderer accepted a channel creation request
DEFAULT_SETTLE_SECONDS = 5.0
# Maximum number of peers joined to a channel at the same time
DEFAULT_JOIN_WORKERS = 8
# Seconds before a Fabric CLI invocation is considered hung
DEFAULT_COMMAND_TIMEOUT = 120.0

# Setup logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)


def set_verbose(verbose):
    """ Switch the shared logger between info and debug level. """
    log.setLevel(logging.DEBUG if verbose else logging.INFO)


def cleanup(work_dir=BASE_DIR):
    """ Remove the scratch directory. Wallets are left untouched. """
    if os.path.exists(work_dir):
        shutil.rmtree(work_dir)
        log.info("Removed directory: {}".format(work_dir))
    else:
        log.debug("Directory does not exist: {}".format(work_dir))
