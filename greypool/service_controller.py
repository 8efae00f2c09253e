"""Restart hook for the network-share daemon exposing the landing zones."""

import logging
import shlex
import subprocess
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ServiceController:
    """Runs the configured restart command after the drive set changes."""

    def __init__(self, restart_command: Optional[List[str]] = None,
                 dry_run: bool = False, timeout: int = 120):
        """
        Initialize the controller.

        Args:
            restart_command: Command and arguments; empty disables restarts
            dry_run: If True, commands are logged but not executed
            timeout: Seconds before the command is abandoned
        """
        self.restart_command = list(restart_command or [])
        self.dry_run = dry_run
        self.timeout = timeout
        self._command_history: List[Dict] = []

    def restart(self) -> Tuple[bool, str, str]:
        """
        Restart the share daemon.

        Returns:
            Tuple of (success, stdout, stderr)
        """
        if not self.restart_command:
            logger.info("No restart command configured; skipping share daemon restart")
            return True, "", ""

        command_str = ' '.join(shlex.quote(arg) for arg in self.restart_command)
        logger.info(f"Executing restart command: {command_str}")
        self._command_history.append({'command': command_str, 'dry_run': self.dry_run})

        if self.dry_run:
            logger.info("DRY RUN: Command would be executed")
            return True, "DRY RUN", ""

        try:
            result = subprocess.run(
                self.restart_command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Restart command timed out: {command_str}")
            return False, "", "Command timed out"
        except OSError as e:
            logger.error(f"Error executing restart command {command_str}: {e}")
            return False, "", str(e)

        success = result.returncode == 0
        if success:
            logger.info(f"Restart command executed successfully: {command_str}")
        else:
            logger.error(f"Restart command failed with return code {result.returncode}: {command_str}")
            logger.error(f"Error output: {result.stderr}")
        return success, result.stdout, result.stderr

    def get_command_history(self) -> List[Dict]:
        return self._command_history.copy()
