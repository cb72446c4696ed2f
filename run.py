#!/usr/bin/env python3
import sys
import argparse

from snpflow.config import Config
from snpflow.errors import SnpFlowError
from snpflow.log import print_error, print_info
from snpflow.measurement import ReportFlavor
from snpflow.workflow import PHASES, WorkflowEngine

DESCRIPTION = "Provision an SEV-SNP host, launch an SNP guest and verify its launch measurement."

EPILOG = """commands:
  setup-host      Build and install the SNP host kernel, QEMU and OVMF
  launch-guest    Boot the SNP guest (first boot installs the guest kernel)
  attest-guest    Request an attestation report and check the launch measurement
  stop-guests     Kill the guests started from the working directory

environment variables (defaults in parentheses):
  WORKING_DIR (~/snp)   HOST_SSH_PORT (10022)   GUEST_NAME (snp-guest)
  GUEST_SIZE_GB (20)    GUEST_MEM_SIZE_MB (2048)   GUEST_SMP (4)
  CPU_MODEL (EPYC-v4)   GUEST_USER (amd)   GUEST_PASS (amd)
  GUEST_SSH_KEY_PATH    GUEST_ROOT_LABEL (cloudimg-rootfs)   QEMU_CMDLINE   IMAGE
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog="snpflow",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-n", "--non-upm", action="store_true",
                        help="Build and launch with the non-UPM (sev-snp-devel) host stack")
    parser.add_argument("-i", "--image", metavar="PATH",
                        help="Use an existing guest image instead of creating one")
    parser.add_argument("-b", "--binary-report", action="store_true",
                        help="Read the measurement from the raw attestation report instead of snpguest's display output")
    parser.add_argument("command", choices=PHASES, help="Phase to run")
    return parser


def main(argv=None):
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 2 on bad usage and 0 for --help
        return e.code if isinstance(e.code, int) else 2

    try:
        config = Config.from_env(upm=not args.non_upm, image=args.image)
    except SnpFlowError as e:
        print_error(str(e))
        return e.exit_code

    print_info(f"Working directory: {config.dir.working}")
    flavor = ReportFlavor.BINARY if args.binary_report else ReportFlavor.DISPLAY
    engine = WorkflowEngine(config, report_flavor=flavor)
    return engine.run(args.command)


if __name__ == "__main__":
    sys.exit(main())
