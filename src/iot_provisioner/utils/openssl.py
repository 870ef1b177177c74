"""
Key generation and conversion through the openssl command-line tool.

Device firmware only reads DER keys: RSA-1024 for the tcp protocol and
EC prime256v1 for udp. openssl produces the PEM files people usually keep
and converts them to DER for flashing.

Example:
    tool = OpenSsl()
    files = tool.new_key_set("device", "rsa")
    der = tool.public_key_to_der("server.pub.pem", "rsa")
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from iot_provisioner.errors import ImageFileNotFound, KeyToolError

logger = logging.getLogger(__name__)

RSA_KEY_BITS = 1024
EC_CURVE = "prime256v1"
SUPPORTED_ALGORITHMS = ("rsa", "ec")

PathLike = Union[str, Path]


def key_algorithm_for_protocol(protocol: Optional[str]) -> str:
    """udp devices use EC keys, everything else RSA."""
    return "ec" if protocol == "udp" else "rsa"


def key_stem(filename: PathLike) -> Path:
    """Strip key extensions: device.pub.pem, device.pem and device.der all give device."""
    path = Path(filename)
    name = path.name
    for ext in (".pub.pem", ".pem", ".der"):
        if name.lower().endswith(ext):
            return path.with_name(name[:-len(ext)])
    return path


@dataclass(frozen=True)
class KeyFiles:
    """Files written for one generated key."""
    private_pem: Path
    public_pem: Path
    private_der: Path

    @classmethod
    def for_stem(cls, stem: PathLike) -> "KeyFiles":
        stem = key_stem(stem)
        return cls(
            private_pem=stem.with_name(stem.name + ".pem"),
            public_pem=stem.with_name(stem.name + ".pub.pem"),
            private_der=stem.with_name(stem.name + ".der"),
        )

    def all(self) -> List[Path]:
        return [self.private_pem, self.public_pem, self.private_der]


class OpenSsl:
    """Thin wrapper over the openssl binary; every failure is a KeyToolError."""

    def __init__(self, binary: str = "openssl", timeout: Optional[float] = 30.0):
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: Sequence[str]) -> str:
        cmd = [self.binary] + [str(a) for a in args]
        logger.debug(f">>> {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise KeyToolError(f"{self.binary} is not installed", raw=str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise KeyToolError(f"{self.binary} timed out", raw=str(e)) from e

        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise KeyToolError(
                f"{self.binary} {args[0]} exited with status {proc.returncode}",
                raw=output.strip(),
            )
        return output

    @staticmethod
    def _check_alg(alg: str) -> None:
        if alg not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported key algorithm {alg!r} (use rsa or ec)")

    def new_key_set(self, stem: PathLike, alg: str) -> KeyFiles:
        """
        Generate a private key and write it as PEM, public PEM and DER.

        Existing files with the same names are overwritten.

        Raises:
            KeyToolError: If any openssl step fails
            ValueError: For an unknown algorithm
        """
        self._check_alg(alg)
        files = KeyFiles.for_stem(stem)
        if alg == "rsa":
            self._run(["genrsa", "-out", files.private_pem, str(RSA_KEY_BITS)])
        else:
            self._run(["ecparam", "-name", EC_CURVE, "-genkey", "-out", files.private_pem])
        self._run([alg, "-in", files.private_pem, "-pubout", "-out", files.public_pem])
        self._run([alg, "-in", files.private_pem, "-outform", "DER", "-out", files.private_der])
        logger.info(f"New {alg} key written to {files.private_der}")
        return files

    def public_key_to_der(self, key_path: PathLike, alg: str) -> Path:
        """
        DER version of a public key file.

        A .der file is returned as-is. Otherwise the same name with a .der
        extension (server.pub.pem gives server.pub.der) is used when it
        already exists, or created from the PEM input.

        Raises:
            ImageFileNotFound: If the key file does not exist
            KeyToolError: If openssl cannot read the key as a public key
        """
        self._check_alg(alg)
        path = Path(key_path)
        if path.suffix.lower() == ".der":
            return path
        der = path.with_suffix(".der")
        if der.exists():
            logger.debug(f"Using existing {der}")
            return der
        if not path.exists():
            raise ImageFileNotFound(f"Key file not found: {path}")

        logger.info(f"Creating DER format file {der.name}")
        self._run([alg, "-in", path, "-pubin", "-pubout", "-outform", "DER", "-out", der])
        return der
