"""
Wi-Fi provisioning over the serial console.

Device firmware in listening mode runs a fixed conversation when it
receives "w":

    SSID: <ssid>
    Security 0=unsecured, 1=WEP, 2=WPA, 3=WPA2: <code>
    Password: <password>
    <completion token>

The security prompt is missing on some firmware, and the completion token
differs by device family (Core prints "Spark <3 you!", the others end with a
bare line feed).
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from iot_provisioner.protocol.handshake import HandshakeSession, HandshakeStep

logger = logging.getLogger(__name__)

WAKE_COMMAND = b"w"
SSID_PROMPT = "SSID:"
SECURITY_PROMPT = "Security 0=unsecured"
PASSWORD_PROMPT = "Password:"


class SecurityType(IntEnum):
    """Security codes understood by the firmware."""
    OPEN = 0
    WEP = 1
    WPA = 2
    WPA2 = 3


@dataclass(frozen=True)
class WifiCredentials:
    ssid: str
    security: SecurityType = SecurityType.WPA2
    password: Optional[str] = None

    def __post_init__(self):
        # plain ints are accepted; anything outside 0-3 raises ValueError
        object.__setattr__(self, "security", SecurityType(self.security))


@dataclass(frozen=True)
class WifiTimeouts:
    """Per-step timeouts in seconds."""
    wake: float = 2.0
    ssid: float = 5.0
    security: float = 3.0
    password: float = 10.0
    done: float = 15.0


class WifiProvisioningFlow:
    """
    Scripted Wi-Fi setup conversation with one device.

    The serial connection is closed when run() returns or raises.

    Example:
        flow = WifiProvisioningFlow(SerialLink("/dev/ttyACM0"), done_token="\\n")
        await flow.run(WifiCredentials("HomeNet", SecurityType.WPA2, "secret1"))
    """

    def __init__(self, connection, done_token: str = "\n", timeouts: Optional[WifiTimeouts] = None):
        self.connection = connection
        self.done_token = done_token
        self.timeouts = timeouts or WifiTimeouts()

    async def run(self, credentials: WifiCredentials) -> str:
        """
        Provision the credentials.

        Returns:
            The inbound chunk carrying the completion token

        Raises:
            HandshakeTimeout: If a required prompt never arrived
            SerialLinkError: If the port could not be opened or failed
        """
        security = credentials.security
        async with HandshakeSession(self.connection) as session:
            await self._send_ssid(session, credentials.ssid)

            logger.info(f"Setting security to {security.name}")
            prompted = await session.run_step(HandshakeStep(
                prompt=SECURITY_PROMPT,
                answer=f"{int(security)}\n".encode(),
                timeout=self.timeouts.security,
                always_resolve=True,
            ))

            if prompted is None and security is SecurityType.OPEN:
                # no security prompt: an open network still expects an empty password line
                await session.run_step(HandshakeStep(answer=b"\n"))
            elif credentials.password:
                await session.run_step(HandshakeStep(
                    prompt=PASSWORD_PROMPT,
                    answer=f"{credentials.password}\n".encode(),
                    timeout=self.timeouts.password,
                ))

            logger.info("Waiting for the device to confirm")
            done = await session.run_step(HandshakeStep(
                prompt=self.done_token,
                timeout=self.timeouts.done,
            ))

        logger.info(f"Wi-Fi credentials for '{credentials.ssid}' accepted")
        return done

    async def _send_ssid(self, session: HandshakeSession, ssid: str) -> None:
        # Firmware that is still booting drops the first "w"; resend it once.
        ssid_answer = f"{ssid}\n".encode()
        await session.run_step(HandshakeStep(answer=WAKE_COMMAND))
        seen = await session.run_step(HandshakeStep(
            prompt=SSID_PROMPT,
            answer=ssid_answer,
            timeout=self.timeouts.wake,
            always_resolve=True,
        ))
        if seen is not None:
            return

        logger.warning("No SSID prompt yet, sending wake command again")
        await session.run_step(HandshakeStep(answer=WAKE_COMMAND))
        await session.run_step(HandshakeStep(
            prompt=SSID_PROMPT,
            answer=ssid_answer,
            timeout=self.timeouts.ssid,
        ))
