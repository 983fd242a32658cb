import hashlib
import platform
import socket
import uuid

import psutil

from config import settings

def get_device_id() -> str:
    """
    Identifier this device binds activation codes to.

    An explicit DEVICE_ID setting wins; otherwise the id is a hash of stable
    hardware identifiers so raw MAC addresses never reach the shared store.
    """
    if settings.DEVICE_ID:
        return settings.DEVICE_ID

    # MAC address (most stable identifier)
    mac = ':'.join(['{:02x}'.format((uuid.getnode() >> elements) & 0xff)
                    for elements in range(0, 2*6, 2)][::-1])

    parts = [
        mac,
        str(psutil.cpu_count(logical=True)),
        platform.system(),
        platform.machine(),
        socket.gethostname(),
        settings.APP_NAME,
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8", errors="ignore")).hexdigest()
    return digest[:32].upper()
