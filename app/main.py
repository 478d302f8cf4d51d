import sys
import asyncio
import argparse

from config import (BASE_DIR, DEFAULT_JOIN_WORKERS, DEFAULT_NETWORK_YAML,
                    DEFAULT_SETTLE_SECONDS, WALLET_DIR, cleanup, log,
                    set_verbose)
from provisioning.errors import ProvisioningError
from provisioning.identity import EnrollMode
from provisioning.network import load_network_config
from provisioning.workflow import build_cli_workflow


def build_parser():
    parser = argparse.ArgumentParser(
        prog="fabric-provisioner",
        description="Enroll Hyperledger Fabric identities, create a channel and join the peers to it.",
        add_help=True,
    )
    parser.add_argument("--network", default=DEFAULT_NETWORK_YAML, help="Network topology YAML file")
    parser.add_argument("--wallet-dir", default=WALLET_DIR, help="Folder holding one wallet per organization")
    parser.add_argument("--work-dir", default=BASE_DIR, help="Scratch folder for MSP folders and channel artifacts")
    parser.add_argument("--tools-container", help="Run the Fabric binaries in this container (e.g. a fabric-tools CLI)")
    parser.add_argument("--settle-seconds", type=float, default=DEFAULT_SETTLE_SECONDS,
                        help="Seconds to wait after the orderer accepted a new channel")
    parser.add_argument("--join-workers", type=int, default=DEFAULT_JOIN_WORKERS,
                        help="Maximum number of peers joined at the same time")
    parser.add_argument("--clean", action="store_true", help="Remove the scratch folder before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level")

    sub = parser.add_subparsers(dest="command", required=True)

    # Channel creation and join
    prepare = sub.add_parser("prepare", help="Create a channel and join the peers of its organizations")
    prepare.add_argument("channel", help="Channel name")
    prepare.add_argument("mode", choices=[m.value for m in EnrollMode],
                         help="'load' imports the cryptogen admins, 'enroll' enrolls them against the CAs")
    prepare.add_argument("org", nargs="?", default="all", help="Organization key, or 'all'")
    prepare.add_argument("--config-tx", help="Channel transaction file. Defaults to the one of the topology")

    # Identity management
    enroll = sub.add_parser("enroll", help="Register and enroll a user of an organization")
    enroll.add_argument("org", help="Organization key")
    enroll.add_argument("user", help="User id")
    enroll.add_argument("--admin", action="store_true", help="Give the user the admin role")

    load = sub.add_parser("load", help="Import a user generated by cryptogen into the wallet")
    load.add_argument("org", help="Organization key")
    load.add_argument("user", help="Wallet label of the user")
    load.add_argument("--msp-dir", required=True, help="MSP folder of the user")
    load.add_argument("--admin", action="store_true", help="Store the user with the admin role")
    return parser


async def run_command(args):
    network = load_network_config(args.network)
    mode = EnrollMode(args.mode) if args.command == "prepare" else EnrollMode.ENROLL
    workflow = build_cli_workflow(
        network,
        mode=mode,
        wallet_dir=args.wallet_dir,
        work_dir=args.work_dir,
        tools_container=args.tools_container,
        settle_seconds=args.settle_seconds,
        join_workers=args.join_workers,
    )

    if args.command == "prepare":
        result = await workflow.run(args.channel, args.org, args.config_tx)
        log.info(f"Channel {result.channel} is {result.state.value}, {len(result.join_report.joined)} peers joined")
    elif args.command == "enroll":
        identity = await workflow.enroll_user(args.org, args.user, args.admin)
        log.info(f"User {identity.label} of {identity.msp_id} is enrolled")
    elif args.command == "load":
        identity = await workflow.load_user(args.org, args.user, args.msp_dir, args.admin)
        log.info(f"User {identity.label} of {identity.msp_id} is in the wallet")


def main(argv=None):
    """ Entry point. Returns the process exit code: 0 on success, 1 on any provisioning failure. """
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)
    if args.clean:
        cleanup(args.work_dir)
    try:
        asyncio.run(run_command(args))
    except ProvisioningError as e:
        log.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
