import datetime
import logging
import os
import platform
import stat
import sys

from . import config

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("credvault.audit")

if platform.system() == "Windows":
    try:
        import win32security
        import win32api
        import win32con
        import win32file
        WINDOWS_SECURITY_AVAILABLE = True
    except ImportError:
        logger.warning("pywin32 not fully installed, cannot set Windows file permissions securely.")
        WINDOWS_SECURITY_AVAILABLE = False
else:
    WINDOWS_SECURITY_AVAILABLE = False

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
AUDIT_FORMAT = '%(asctime)s | %(message)s'


def set_file_permissions(filepath: str) -> bool:
    """Make a file readable/writable by its owner only."""
    if platform.system() == 'Windows':
        return _set_windows_file_permissions(filepath)
    try:
        os.chmod(filepath, stat.S_IRUSR | stat.S_IWUSR)  # 600
    except OSError as e:
        logger.error(f"Failed to chmod {filepath}: {e}")
        return False
    return True


def _set_windows_file_permissions(filepath: str) -> bool:
    """
    Sets restrictive permissions on a file for Windows, granting full control
    only to the current user and removing access for others.
    """
    if not WINDOWS_SECURITY_AVAILABLE:
        logger.warning(f"Skipping Windows file permission setting for {filepath}: pywin32 not available.")
        return False

    try:
        current_user_sid, _, _ = win32security.LookupAccountName(None, win32api.GetUserName())

        dacl = win32security.ACL()
        dacl.AddAccessAllowedAce(
            win32security.ACL_REVISION,
            win32con.GENERIC_READ | win32con.GENERIC_WRITE,
            current_user_sid
        )

        file_handle = win32file.CreateFile(
            filepath,
            win32con.WRITE_DAC,
            win32file.FILE_SHARE_READ | win32file.FILE_SHARE_WRITE | win32file.FILE_SHARE_DELETE,
            None,
            win32con.OPEN_EXISTING,
            win32con.FILE_ATTRIBUTE_NORMAL,
            None
        )
        try:
            win32security.SetSecurityInfo(
                file_handle,
                win32security.SE_FILE_OBJECT,
                win32security.DACL_SECURITY_INFORMATION | win32security.PROTECTED_DACL_SECURITY_INFORMATION,
                None,
                None,
                dacl,
                None
            )
            logger.info(f"Set restrictive permissions for {filepath} on Windows.")
        finally:
            win32file.CloseHandle(file_handle)
    except win32api.error as e:
        if e.winerror == 5:  # Access is denied
            logger.warning(f"Could not harden Windows permissions for {filepath}: Access is denied.")
            return True
        logger.error(f"Failed to set Windows file permissions for {filepath}: {e}")
        return False
    return True


def setup_logging(settings: config.Settings) -> None:
    """
    Configure the root logger and the audit log.

    Application logs go to stdout. Security-relevant actions go through
    audit_logger to <LOG_DIR>/audit.log as "timestamp | ACTION | details".
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()
    try:
        os.makedirs(settings.LOG_DIR, exist_ok=True)
        audit_file = os.path.join(settings.LOG_DIR, config.AUDIT_LOG_FILE)
        audit_handler = logging.FileHandler(audit_file, encoding='utf-8')
    except OSError as e:
        logger.warning(f"Audit log disabled, cannot write to {settings.LOG_DIR}: {e}")
    else:
        audit_handler.setFormatter(logging.Formatter(AUDIT_FORMAT))
        audit_logger.addHandler(audit_handler)
        set_file_permissions(audit_file)
    audit_logger.setLevel(logging.INFO)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def log_action(action: str, details: str) -> None:
    """Log a security-relevant action. Never pass plaintext passwords or keys."""
    audit_logger.info(f"{action} | {details}")


def timestamp_from_epoch_ms(value: str) -> str:
    """Render a millisecond epoch string (as found in Firefox exports) as ISO-8601 UTC."""
    try:
        seconds = int(value) / 1000
        return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc).isoformat()
    except (ValueError, OverflowError, OSError):
        return ""
