import logging
import os
import time
import uuid
import zipfile
from typing import Optional
from urllib.parse import quote_plus
from xml.sax.saxutils import escape as _xml_escape

from common.config import settings

logger = logging.getLogger(__name__)

CLIENT_ZIP_MAX_BYTES = 49 * 1024 * 1024


def _xml(value) -> str:
    return _xml_escape(str(value), {'"': "&quot;", "'": "&apos;"})


def tt_filename() -> str:
    return f"{settings.TEAMTALK_SERVER_NAME}.tt"


def build_tt_file(username: str, password: str, nickname: Optional[str] = None) -> str:
    """Renders the TeamTalk 5 connection file for one account."""
    encrypted = "true" if settings.TEAMTALK_ENCRYPTED else "false"
    return (
        '<?xml version="1.0" encoding="UTF-8" ?>\n'
        '<teamtalk version="5.0">\n'
        "    <host>\n"
        f"        <name>{_xml(settings.TEAMTALK_SERVER_NAME)}</name>\n"
        f"        <address>{_xml(settings.teamtalk_public_host)}</address>\n"
        f"        <tcpport>{settings.TEAMTALK_TCP_PORT}</tcpport>\n"
        f"        <udpport>{settings.teamtalk_udp_port}</udpport>\n"
        f"        <encrypted>{encrypted}</encrypted>\n"
        "        <trusted-certificate>\n"
        "            <certificate-authority-pem></certificate-authority-pem>\n"
        "            <client-certificate-pem></client-certificate-pem>\n"
        "            <client-private-key-pem></client-private-key-pem>\n"
        "            <verify-peer>false</verify-peer>\n"
        "        </trusted-certificate>\n"
        "        <auth>\n"
        f"            <username>{_xml(username)}</username>\n"
        f"            <password>{_xml(password)}</password>\n"
        f"            <nickname>{_xml(nickname or username)}</nickname>\n"
        "        </auth>\n"
        "        <join>\n"
        f"            <channel>{_xml(settings.TEAMTALK_JOIN_CHANNEL)}</channel>\n"
        f"            <password>{_xml(settings.TEAMTALK_JOIN_CHANNEL_PASSWORD)}</password>\n"
        "        </join>\n"
        "    </host>\n"
        "</teamtalk>\n"
    )


def build_tt_link(username: str, password: str, nickname: Optional[str] = None) -> str:
    params = [
        ("tcpport", str(settings.TEAMTALK_TCP_PORT)),
        ("udpport", str(settings.teamtalk_udp_port)),
        ("encrypted", "1" if settings.TEAMTALK_ENCRYPTED else "0"),
        ("username", username),
        ("password", password),
        ("nickname", nickname or username),
        ("channel", settings.TEAMTALK_JOIN_CHANNEL),
        ("chanpasswd", settings.TEAMTALK_JOIN_CHANNEL_PASSWORD),
    ]
    query = "&".join(f"{key}={quote_plus(value)}" for key, value in params)
    return f"tt://{settings.teamtalk_public_host}?{query}"


def _temp_dir() -> str:
    os.makedirs(settings.TEMP_FILES_DIR, exist_ok=True)
    return settings.TEMP_FILES_DIR


def write_temp_file(filename: str, content: str) -> str:
    path = os.path.join(_temp_dir(), f"{uuid.uuid4().hex}_{filename}")
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)
    return path


def build_client_zip(username: str, tt_content: str) -> Optional[str]:
    """Bundles the portable client template with the account's .tt file.

    Returns None when no template is configured.
    """
    template_dir = settings.TEAMTALK_CLIENT_TEMPLATE_DIR
    if not template_dir:
        return None
    if not os.path.isdir(template_dir):
        logger.warning("Client template dir %s does not exist", template_dir)
        return None
    path = os.path.join(_temp_dir(), f"{uuid.uuid4().hex}_{username}_TeamTalk.zip")
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for root, _dirs, files in os.walk(template_dir):
            for name in files:
                full_path = os.path.join(root, name)
                archive.write(full_path, os.path.relpath(full_path, template_dir))
        archive.writestr(f"Client/{tt_filename()}", tt_content)
    return path


def purge_old_temp_files(max_age_seconds: int, now: Optional[float] = None) -> int:
    """Removes generated files older than max_age_seconds."""
    directory = settings.TEMP_FILES_DIR
    if not os.path.isdir(directory):
        return 0
    cutoff = (now or time.time()) - max_age_seconds
    removed = 0
    for name in os.listdir(directory):
        path = os.path.join(directory, name)
        try:
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        except OSError as e:
            logger.warning("Could not purge temp file %s: %s", path, e)
    return removed
