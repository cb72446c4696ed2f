#!/usr/bin/env python3
import os
import subprocess

import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from snpflow.config import CLOUD_INIT_IMAGE_URL
from snpflow.errors import ArtifactError
from snpflow.host import run_command
from snpflow.log import print_info

DOWNLOAD_CHUNK = 1 << 20

USER_DATA_TEMPLATE = """#cloud-config
chpasswd:
  expire: false
ssh_pwauth: true
users:
  - default
  - name: {user}
    plain_text_passwd: {password}
    sudo: ALL=(ALL) NOPASSWD:ALL
    shell: /bin/bash
    lock_passwd: false
    ssh_authorized_keys:
      - {pub_key}
"""

METADATA_TEMPLATE = """instance-id: "{name}"
local-hostname: "{name}"
"""


def generate_guest_ssh_keypair(key_path):
    """
    Create an ed25519 key pair in OpenSSH format at key_path and key_path.pub.

    Returns False without touching anything if both files already exist.
    """
    if os.path.isfile(key_path) and os.path.isfile(key_path + ".pub"):
        print_info("Guest SSH key pair already generated")
        return False

    os.makedirs(os.path.dirname(key_path) or ".", exist_ok=True)
    key = ed25519.Ed25519PrivateKey.generate()
    private_bytes = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )

    # ssh refuses private keys readable by others.
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(private_bytes)
    with open(key_path + ".pub", "wb") as f:
        f.write(public_bytes + b"\n")
    print_info(f"Generated guest SSH key pair at {key_path}")
    return True


def write_cloud_init_data(config):
    """Write the cloud-init metadata and user-data files; returns their paths."""
    pub_key_path = config.guest_ssh_key_path + ".pub"
    try:
        with open(pub_key_path, "r") as f:
            pub_key = f.read().strip()
    except FileNotFoundError:
        raise ArtifactError(f"Guest SSH public key not found: {pub_key_path}")

    launch_dir = config.dir.launch
    os.makedirs(launch_dir, exist_ok=True)
    metadata = os.path.join(launch_dir, f"{config.guest_name}-metadata.yaml")
    user_data = os.path.join(launch_dir, f"{config.guest_name}-user-data.yaml")

    with open(metadata, "w") as f:
        f.write(METADATA_TEMPLATE.format(name=config.guest_name))
    with open(user_data, "w") as f:
        f.write(USER_DATA_TEMPLATE.format(user=config.guest_user, password=config.guest_pass,
                                          pub_key=pub_key))
    return metadata, user_data


def download_file(url, dest, session=None, timeout=60):
    """Stream url into dest, replacing it only once the download completes."""
    http = session or requests
    tmp_path = dest + ".part"
    print_info(f"Downloading {url} to {dest}")
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    if chunk:
                        f.write(chunk)
    except requests.RequestException as e:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise ArtifactError(f"Download of {url} failed: {e}")
    os.replace(tmp_path, dest)
    return dest


def create_cloud_init_image(config, session=None, runner=subprocess.run):
    """
    Prepare a fresh guest disk: key pair, cloud-init seed, cloud image, resize.

    Skips the work if the seed data and image are already present.
    """
    metadata = os.path.join(config.dir.launch, f"{config.guest_name}-metadata.yaml")
    user_data = os.path.join(config.dir.launch, f"{config.guest_name}-user-data.yaml")

    generate_guest_ssh_keypair(config.guest_ssh_key_path)

    if all(os.path.isfile(p) for p in (metadata, user_data, config.seed_image, config.image)):
        print_info("cloud-init data already generated")
        return config.image

    metadata, user_data = write_cloud_init_data(config)
    run_command(["cloud-localds", config.seed_image, user_data, metadata], runner=runner)

    if not os.path.isfile(config.image):
        download_file(CLOUD_INIT_IMAGE_URL, config.image, session=session)

    run_command(["qemu-img", "resize", config.image, f"{config.guest_size_gb}G"], runner=runner)
    return config.image
