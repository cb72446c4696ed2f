import os
import subprocess
from dataclasses import asdict, dataclass, fields

from snpflow.errors import ArtifactError
from snpflow.remote import RemoteExecutor
from snpflow.state import read_json, write_json_atomic

SESSION_FILE = "session.json"


@dataclass
class GuestSession:
    """Connection parameters of one running SNP guest, owned by launch-guest."""

    host: str
    port: int
    user: str
    key_path: str
    image: str
    pid_file: str
    working_dir: str

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.guest_host,
            port=config.host_ssh_port,
            user=config.guest_user,
            key_path=config.guest_ssh_key_path,
            image=config.image,
            pid_file=config.pid_file,
            working_dir=config.dir.working,
        )

    @staticmethod
    def path_in(launch_dir):
        return os.path.join(launch_dir, SESSION_FILE)

    def save(self, launch_dir):
        write_json_atomic(self.path_in(launch_dir), asdict(self))

    @classmethod
    def load(cls, launch_dir):
        """Locate the session written by launch-guest; never creates one."""
        path = cls.path_in(launch_dir)
        if not os.path.isfile(path):
            raise ArtifactError(f"No guest session found at {path}, run 'launch-guest' first")
        data = read_json(path, "Guest session")
        names = {f.name for f in fields(cls)}
        missing = names - set(data)
        if missing:
            raise ArtifactError(f"Guest session {path} is missing {', '.join(sorted(missing))}")
        return cls(**{name: data[name] for name in names})

    def pid(self):
        """PID QEMU wrote with -pidfile, or None if unknown."""
        try:
            with open(self.pid_file, "r") as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def executor(self, runner=subprocess.run):
        if not os.path.isfile(self.key_path):
            raise ArtifactError(f"SSH key not present [{self.key_path}], cannot reach the guest")
        return RemoteExecutor(self.host, self.port, self.key_path, self.user, runner=runner)

    def ssh_hint(self):
        return f"ssh -p {self.port} -i {self.key_path} {self.user}@{self.host}"
