# certfunctions.py - pfcert Core Functions Library
# Version 1.0 - October 2026
# Shared logging, configuration, credential and command helpers used by the
# pfSense certificate update tooling

import os
import copy
import sys
import json
import shlex
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

LOG_FORMAT = '[%(asctime)s] %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

sshpass = '/usr/bin/sshpass'

# systemd passes credentials through this directory
CREDENTIALS_DIRECTORY_VAR = 'CREDENTIALS_DIRECTORY'

DEFAULT_COMMAND_TIMEOUT = 300

DEFAULT_CONFIG = {
    # pfSense configuration store
    'config_path': '/cf/conf/config.xml',
    'lock_path': '/tmp/config.lock',
    'cache_path': '/tmp/config.cache',
    'backup_dir': '/cf/conf/backup',
    'max_backups': 30,
    # Remote access (leave host empty to work on the local firewall)
    'host': '',
    'ssh_user': 'admin',
    'ssh_port': 22,
    'ssh_password': '',
    'ssh_password_file': '',
    'ssh_identity': '',
    # Public host key of the firewall ("ssh-ed25519 AAAA..."), or "ignore"
    'ssh_host_key': '',
    'ssh_options': ['LogLevel=ERROR'],
    # Certificate to update
    'refid': '',
    'certificate_path': '',
    'key_path': '',
    # Services
    'restart_timeout': 120,
    'restart_commands': {},
    # Post-restart verification
    'verify_url': '',
    'verify_timeout': 120,
}

ENV_MAPPING = {
    'PFCERT_CONFIG_XML': 'config_path',
    'PFCERT_HOST': 'host',
    'PFCERT_SSH_USER': 'ssh_user',
    'PFCERT_SSH_PASS': 'ssh_password',
    'PFCERT_SSH_IDENTITY': 'ssh_identity',
    'PFCERT_SSH_HOST_KEY': 'ssh_host_key',
    'PFCERT_REFID': 'refid',
    'PFCERT_CERTIFICATE': 'certificate_path',
    'PFCERT_KEY': 'key_path',
    'PFCERT_VERIFY_URL': 'verify_url',
}

#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure the root logger for command line use.

    Progress lines are operator output, so they go to stdout rather than
    the logging default of stderr.

    :param verbose: Enable DEBUG level output
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stdout,
        force=True
    )


def print_banner(title: str) -> None:
    """Print a section title framed by rules"""
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)

#==============================================================================
# CONFIGURATION
#==============================================================================

class ConfigError(Exception):
    """Raised when configuration or input material cannot be loaded"""


def resolve_credential_path(value: str) -> Path:
    """
    Resolve a configured path, expanding a leading $CREDENTIALS_DIRECTORY.

    :param value: Path as written in the configuration
    :return: Resolved path
    :raises ConfigError: if $CREDENTIALS_DIRECTORY is referenced but not set
    """
    prefix = '$' + CREDENTIALS_DIRECTORY_VAR
    if value.startswith(prefix):
        directory = os.environ.get(CREDENTIALS_DIRECTORY_VAR)
        if not directory:
            raise ConfigError(
                f'${CREDENTIALS_DIRECTORY_VAR} is referenced by "{value}" '
                'yet that environment variable isn\'t set'
            )
        return Path(directory) / value[len(prefix):].lstrip('/')
    return Path(value).expanduser()


def load_password_from_file(filepath: str) -> Optional[str]:
    """Load a password from a credentials file."""
    try:
        creds_path = resolve_credential_path(filepath)
        if creds_path.exists():
            password = creds_path.read_text().strip()
            if password:
                return password
    except (OSError, ConfigError) as e:
        logger.warning(f"Failed to read credentials file: {e}")
    return None


def load_config(config_path: Optional[str] = None) -> Dict:
    """
    Load configuration from defaults, a JSON file and environment variables.

    Command line overrides are applied by the caller afterwards.

    :param config_path: Optional JSON configuration file
    :return: Configuration dictionary
    :raises ConfigError: if the named file is missing or not valid JSON
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path:
        path = resolve_credential_path(config_path)
        if not path.exists():
            raise ConfigError(f'{path}: file not found')
        logger.debug(f"Loading config file {path}")
        try:
            with open(path, 'r') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f'Failed to load config file {path}: {e}') from e
        if not isinstance(file_config, dict):
            raise ConfigError(f'{path}: expected a JSON object')
        config.update(file_config)

    for env_var, config_key in ENV_MAPPING.items():
        env_value = os.getenv(env_var)
        if env_value:
            config[config_key] = env_value

    if not config.get('ssh_password') and config.get('ssh_password_file'):
        file_password = load_password_from_file(config['ssh_password_file'])
        if file_password:
            config['ssh_password'] = file_password
            logger.debug(f"Loaded SSH password from {config['ssh_password_file']}")

    return config


def read_blob(source: str, label: str) -> str:
    """
    Read PEM material from a file, or from stdin when source is '-'.

    No structural checks are made here beyond rejecting empty input.

    :param source: File path or '-'
    :param label: What is being read, for error messages
    :return: File contents
    :raises ConfigError: if the file cannot be read or is empty
    """
    if source == '-':
        data = sys.stdin.read()
        origin = 'stdin'
    else:
        path = resolve_credential_path(source)
        origin = str(path)
        try:
            data = path.read_text()
        except OSError as e:
            raise ConfigError(f'failed to open {label} "{origin}": {e}') from e

    if not data.strip():
        raise ConfigError(f'no {label} found in "{origin}"')
    return data

#==============================================================================
# COMMAND EXECUTION
#==============================================================================

def run_command(cmd: Union[str, List[str]], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a command

    :param cmd: Command string (run through the shell) or argument list
    :param kwargs: timeout, input_text
    :return: subprocess.CompletedProcess; a timeout or launch failure is
             reported as returncode 1 with the reason in stderr
    """
    timeout = kwargs.get('timeout', DEFAULT_COMMAND_TIMEOUT)
    input_text = kwargs.get('input_text', None)

    try:
        return subprocess.run(
            cmd,
            shell=isinstance(cmd, str),
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        logger.debug(f'Command timed out after {timeout}s: {cmd}')
        return subprocess.CompletedProcess(cmd, 1, '', f'Timeout after {timeout}s')
    except OSError as e:
        logger.debug(f'Command failed: {cmd} - {e}')
        return subprocess.CompletedProcess(cmd, 1, '', str(e))


class LocalRunner:
    """Runs commands on the machine the tool is running on."""

    description = 'localhost'

    def run(self, command: str, timeout: int = DEFAULT_COMMAND_TIMEOUT,
            input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        return run_command(command, timeout=timeout, input_text=input_text)

    def close(self) -> None:
        pass


class SSHRunner:
    """
    Runs commands on a remote host over SSH.

    Password authentication goes through sshpass; with an identity file the
    key is used directly. The host key must either be pinned or explicitly
    ignored with host_key='ignore'.
    """

    # known_hosts name for the pinned key, independent of host and port
    HOST_KEY_ALIAS = 'pfcert-target'

    def __init__(self, host: str, user: str = 'admin', password: Optional[str] = None,
                 identity: Optional[str] = None, port: int = 22,
                 options: Optional[List[str]] = None, host_key: Optional[str] = None):
        self.host = host
        self.user = user
        self.password = password
        self.identity = str(resolve_credential_path(identity)) if identity else None
        self.port = int(port)
        self.options = list(DEFAULT_CONFIG['ssh_options'] if options is None else options)
        self.known_hosts: Optional[str] = None
        self.options += self._host_key_options(host_key)

    def _host_key_options(self, host_key: Optional[str]) -> List[str]:
        host_key = (host_key or '').strip()
        if not host_key:
            raise ConfigError(
                f'ssh_host_key must be set for {self.host}: '
                'give the firewall\'s public host key or "ignore"'
            )

        if host_key == 'ignore':
            logger.warning(f"⚠ Host key checking disabled for {self.host}")
            return ['StrictHostKeyChecking=no', 'UserKnownHostsFile=/dev/null']

        try:
            serialization.load_ssh_public_key(host_key.encode('utf-8'))
        except (ValueError, UnsupportedAlgorithm) as e:
            raise ConfigError(f'ssh_host_key for {self.host} is not an OpenSSH public key: {e}') from e

        fd, self.known_hosts = tempfile.mkstemp(prefix='pfcert-known_hosts.')
        with os.fdopen(fd, 'w') as f:
            f.write(f'{self.HOST_KEY_ALIAS} {host_key}\n')

        return [
            'StrictHostKeyChecking=yes',
            f'UserKnownHostsFile={self.known_hosts}',
            f'HostKeyAlias={self.HOST_KEY_ALIAS}',
        ]

    def close(self) -> None:
        """Remove the temporary known_hosts file, if one was written."""
        if self.known_hosts and os.path.exists(self.known_hosts):
            os.unlink(self.known_hosts)
        self.known_hosts = None

    @property
    def description(self) -> str:
        return f'{self.user}@{self.host}'

    def _base(self, program: str) -> List[str]:
        cmd = []
        if self.password and not self.identity:
            cmd += [sshpass, '-p', self.password]
        cmd.append(program)
        for option in self.options:
            cmd += ['-o', option]
        if self.identity:
            cmd += ['-i', self.identity, '-o', 'BatchMode=yes']
        return cmd

    def ssh_command(self, command: str) -> List[str]:
        """Build the argument list for running command on the remote host."""
        return self._base('ssh') + ['-p', str(self.port), self.description, command]

    def run(self, command: str, timeout: int = DEFAULT_COMMAND_TIMEOUT,
            input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        logger.debug(f'ssh {self.description}: {command}')
        return run_command(self.ssh_command(command), timeout=timeout, input_text=input_text)

    def put_file(self, local_path: str, remote_path: str, timeout: int = 60) -> subprocess.CompletedProcess:
        """
        Copy a local file to the remote host via scp.

        The remote path is passed as is: scp in SFTP mode does not unquote it,
        so paths that would need shell quoting are refused.
        """
        if shlex.quote(remote_path) != remote_path:
            return subprocess.CompletedProcess([], 1, '', f'unsupported characters in remote path "{remote_path}"')

        cmd = self._base('scp') + [
            '-P', str(self.port),
            local_path,
            f'{self.description}:{remote_path}'
        ]
        logger.debug(f'scp {local_path} -> {self.description}:{remote_path}')
        return run_command(cmd, timeout=timeout)


def build_runner(config: Dict):
    """
    Return an SSHRunner when a host is configured, otherwise a LocalRunner.

    :raises ConfigError: if the SSH identity or host key setting is unusable
    """
    if not config.get('host'):
        return LocalRunner()
    return SSHRunner(
        host=config['host'],
        user=config.get('ssh_user') or 'admin',
        password=config.get('ssh_password') or None,
        identity=config.get('ssh_identity') or None,
        port=config.get('ssh_port') or 22,
        options=config.get('ssh_options'),
        host_key=config.get('ssh_host_key') or None
    )
