"""
Locate and stop the daemonized QEMU guests started from a working directory.
"""

import os
import re

import psutil

from snpflow.errors import ResidualProcessError
from snpflow.log import print_info, print_success, print_warning

SETTLE_TIMEOUT = 3


def _cmdline(proc):
    return " ".join(proc.info.get("cmdline") or [])


def guest_filter(working_dir, image):
    """Regex matching a QEMU invocation from working_dir that boots image."""
    return re.compile(f"{re.escape(working_dir)}.*qemu.*{re.escape(image)}")


def find_guest_processes(working_dir, image, pid=None, process_iter=psutil.process_iter):
    """
    Guest QEMU processes, newest information from the process table.

    A process matches if it is the recorded pid and runs qemu, or if its
    command line passes guest_filter. The current process never matches.
    """
    pattern = guest_filter(working_dir, image)
    own_pid = os.getpid()
    found = []
    for proc in process_iter(["pid", "cmdline"]):
        if proc.pid == own_pid:
            continue
        cmdline = _cmdline(proc)
        if not cmdline:
            continue
        if (pid is not None and proc.pid == pid and "qemu" in cmdline) or pattern.search(cmdline):
            found.append(proc)
    return found


def describe(proc):
    return f"{proc.pid} {_cmdline(proc)}"


def stop_guests(working_dir, image, pid=None, process_iter=psutil.process_iter,
                wait_procs=psutil.wait_procs, timeout=SETTLE_TIMEOUT):
    """
    Kill the guest processes and confirm none remain.

    Returns the number of processes killed. Raises ResidualProcessError if
    the process table still lists a match afterwards.
    """
    running = find_guest_processes(working_dir, image, pid, process_iter)
    if not running:
        print_info("No qemu processes currently running")
        return 0

    print_info("Current running qemu processes:")
    for proc in running:
        print(describe(proc))

    print_info("Killing qemu processes...")
    for proc in running:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            print_warning(f"Not permitted to kill pid {proc.pid}")
    wait_procs(running, timeout=timeout)

    print_info("Verifying no qemu processes running...")
    remaining = find_guest_processes(working_dir, image, pid, process_iter)
    if remaining:
        raise ResidualProcessError([describe(proc) for proc in remaining])
    print_success("No qemu processes running!")
    return len(running)
