# pfconfig.py - pfcert pfSense Configuration Store
# Version 1.0 - October 2026
# Reads, updates and atomically writes the pfSense config.xml certificate store

"""
pfSense Configuration Store

pfSense keeps its whole configuration in a single XML document
(/cf/conf/config.xml). Certificates live in top-level <cert> elements:

    <cert>
        <refid>5f1e...</refid>
        <descr>webConfigurator</descr>
        <type>server</type>
        <caref>5f1d...</caref>
        <crt>base64 of the PEM certificate chain</crt>
        <prv>base64 of the PEM private key</prv>
    </cert>

ConfigStore works on a local file and serialises access with the same lock
file pfSense itself uses. RemoteConfigStore does the same through SSH.
"""

import os
import time
import fcntl
import shlex
import base64
import binascii
import getpass
import logging
import shutil
import socket
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)

#==============================================================================
# CONFIGURATION
#==============================================================================

DEFAULT_CONFIG_PATH = '/cf/conf/config.xml'
DEFAULT_LOCK_PATH = '/tmp/config.lock'
DEFAULT_CACHE_PATH = '/tmp/config.cache'
DEFAULT_BACKUP_DIR = '/cf/conf/backup'
DEFAULT_MAX_BACKUPS = 30

XML_DECLARATION = '<?xml version="1.0"?>\n'

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class CertificateRecord:
    """One certificate known to the firewall"""
    id: str
    description: str
    certificate_data: str
    key_data: str
    ca_ref: str = ""
    # Backing <cert> element when the record came from a config.xml document
    element: Optional[ET.Element] = field(default=None, repr=False, compare=False)


class ConfigStoreError(Exception):
    """The store could not load, import or persist the configuration"""

#==============================================================================
# XML HELPERS
#==============================================================================

def element_text(element: Optional[ET.Element], tag: str) -> str:
    if element is None:
        return ''
    child = element.find(tag)
    if child is None or child.text is None:
        return ''
    return child.text.strip()


def _set_text(element: ET.Element, tag: str, value: str) -> None:
    child = element.find(tag)
    if child is None:
        child = ET.SubElement(element, tag)
    child.text = value


def _decode(value: str) -> str:
    if not value:
        return ''
    try:
        return base64.b64decode(value).decode('utf-8', errors='replace')
    except (binascii.Error, ValueError):
        logger.debug("Ignoring undecodable base64 material")
        return ''


def _encode(value: str) -> str:
    return base64.b64encode(value.encode('utf-8')).decode('ascii')

#==============================================================================
# LOCAL STORE
#==============================================================================

class ConfigStore:
    """
    A pfSense config.xml document on the local filesystem.

    Use as a context manager to hold the configuration lock for the whole
    read-modify-persist span:

        with ConfigStore('/cf/conf/config.xml') as store:
            records = store.lookup_records()
            ...
            store.persist('changed something')
    """

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        lock_path: str = DEFAULT_LOCK_PATH,
        cache_path: str = DEFAULT_CACHE_PATH,
        backup_dir: str = DEFAULT_BACKUP_DIR,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        username: Optional[str] = None
    ):
        self.config_path = str(config_path)
        self.lock_path = str(lock_path)
        self.cache_path = str(cache_path)
        self.backup_dir = str(backup_dir)
        self.max_backups = int(max_backups)
        self.username = username or f'{getpass.getuser()}@{socket.gethostname()} (pfcert)'
        self.root: Optional[ET.Element] = None
        self._records: List[CertificateRecord] = []
        self._lock_fd: Optional[int] = None

    def __enter__(self):
        self.lock()
        try:
            self.load()
        except Exception:
            self.unlock()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unlock()
        return False

    #--------------------------------------------------------------------------
    # Locking
    #--------------------------------------------------------------------------

    def lock(self) -> None:
        """Take the exclusive pfSense configuration lock."""
        if self._lock_fd is not None:
            return
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ConfigStoreError(f'failed to open lock file {self.lock_path}: {e}') from e
        logger.debug(f"Waiting for configuration lock {self.lock_path}")
        fcntl.flock(fd, fcntl.LOCK_EX)
        self._lock_fd = fd

    def unlock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    #--------------------------------------------------------------------------
    # Reading
    #--------------------------------------------------------------------------

    def load(self) -> ET.Element:
        """Parse the configuration document and index its certificates."""
        text = self._read_document()
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise ConfigStoreError(f'{self.config_path} is not valid XML: {e}') from e

        if root.tag != 'pfsense':
            raise ConfigStoreError(f'{self.config_path} is not a pfSense configuration (root <{root.tag}>)')

        self.root = root
        self._records = [
            CertificateRecord(
                id=element_text(element, 'refid'),
                description=element_text(element, 'descr'),
                certificate_data=_decode(element_text(element, 'crt')),
                key_data=_decode(element_text(element, 'prv')),
                ca_ref=element_text(element, 'caref'),
                element=element
            )
            for element in root.findall('cert')
        ]
        logger.debug(f"Loaded {len(self._records)} certificates from {self.config_path}")
        return root

    def lookup_records(self) -> List[CertificateRecord]:
        """Return the live certificate records in document order."""
        if self.root is None:
            self.load()
        return self._records

    #--------------------------------------------------------------------------
    # Import
    #--------------------------------------------------------------------------

    def import_certificate(self, record: CertificateRecord, certificate: str, private_key: str) -> None:
        """
        Overwrite the certificate and key of an existing record.

        The material must parse as a PEM certificate chain and a PEM private
        key. The record is linked to its issuing CA when that CA is in the
        store; self-signed certificates keep their current CA reference.

        :raises ConfigStoreError: if the material is rejected
        """
        if record.element is None:
            raise ConfigStoreError(f'certificate "{record.id}" does not belong to {self.config_path}')

        leaf = self._load_leaf_certificate(certificate)
        self._check_private_key(private_key)
        ca_ref = self._find_issuer_ref(leaf)

        record.certificate_data = certificate
        record.key_data = private_key
        _set_text(record.element, 'crt', _encode(certificate))
        _set_text(record.element, 'prv', _encode(private_key))

        if ca_ref:
            record.ca_ref = ca_ref
            _set_text(record.element, 'caref', ca_ref)

    @staticmethod
    def _load_leaf_certificate(certificate: str) -> x509.Certificate:
        try:
            chain = x509.load_pem_x509_certificates(certificate.encode('utf-8'))
        except ValueError as e:
            raise ConfigStoreError(f'failed to read certificates from PEM data: {e}') from e
        return chain[0]

    @staticmethod
    def _check_private_key(private_key: str) -> None:
        try:
            serialization.load_pem_private_key(private_key.encode('utf-8'), password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ConfigStoreError(f'failed to read private key from PEM data: {e}') from e

    def _find_issuer_ref(self, leaf: x509.Certificate) -> Optional[str]:
        if leaf.issuer == leaf.subject or self.root is None:
            return None

        for ca in self.root.findall('ca'):
            try:
                ca_cert = x509.load_pem_x509_certificate(_decode(element_text(ca, 'crt')).encode('utf-8'))
            except ValueError:
                continue
            if ca_cert.subject == leaf.issuer:
                return element_text(ca, 'refid')
        return None

    #--------------------------------------------------------------------------
    # Persistence
    #--------------------------------------------------------------------------

    def serialize(self) -> str:
        """Render the current document as pfSense writes it."""
        ET.indent(self.root, space='\t')
        return XML_DECLARATION + ET.tostring(self.root, encoding='unicode') + '\n'

    def persist(self, note: str) -> None:
        """
        Durably write the whole configuration, tagged with a change note.

        The previous document is kept in the backup directory, a revision
        entry records the note, the new document replaces the old one with an
        atomic rename and the pfSense config cache is dropped. The
        configuration lock is released afterwards, so services restarted
        later are free to write the configuration themselves.

        :raises ConfigStoreError: if anything fails before the rename completes
        """
        if self.root is None:
            raise ConfigStoreError('configuration has not been loaded')

        previous_time = self._set_revision(note)
        document = self.serialize()

        try:
            self._backup_previous(previous_time)
            self._write_document(document)
            self._drop_cache()
        except OSError as e:
            raise ConfigStoreError(f'failed to write {self.config_path}: {e}') from e
        finally:
            self.unlock()

        logger.debug(f"Configuration written to {self.config_path}: {note}")

    def _set_revision(self, note: str) -> str:
        revision = self.root.find('revision')
        if revision is None:
            previous_time = ''
            revision = ET.SubElement(self.root, 'revision')
        else:
            previous_time = element_text(revision, 'time')
            revision.clear()

        ET.SubElement(revision, 'time').text = str(int(time.time()))
        ET.SubElement(revision, 'description').text = note
        ET.SubElement(revision, 'username').text = self.username
        return previous_time

    def _read_document(self) -> str:
        try:
            with open(self.config_path, 'r') as f:
                return f.read()
        except OSError as e:
            raise ConfigStoreError(f'failed to read {self.config_path}: {e}') from e

    def _backup_previous(self, previous_time: str) -> None:
        if not os.path.exists(self.config_path) or self.max_backups <= 0:
            return

        stamp = previous_time or str(int(os.path.getmtime(self.config_path)))
        os.makedirs(self.backup_dir, exist_ok=True)
        backup = os.path.join(self.backup_dir, f'config-{stamp}.xml')
        shutil.copy2(self.config_path, backup)
        logger.debug(f"Previous configuration saved to {backup}")

        backups = sorted(Path(self.backup_dir).glob('config-*.xml'), key=lambda p: p.stat().st_mtime)
        for old in backups[:-self.max_backups]:
            old.unlink()

    def _write_document(self, document: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.config_path))
        fd, tmp_path = tempfile.mkstemp(prefix='.config.', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(document)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.config_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _drop_cache(self) -> None:
        try:
            os.remove(self.cache_path)
        except FileNotFoundError:
            pass

#==============================================================================
# REMOTE STORE
#==============================================================================

class RemoteConfigStore(ConfigStore):
    """
    A pfSense config.xml document on a remote firewall, reached over SSH.

    The document is read with cat and uploaded with scp to a temporary path
    next to the live file. The final rename runs under lockf on the same
    lock file the firewall uses, so it cannot interleave with a local
    write_config().
    """

    def __init__(self, runner, timeout: int = 60, **kwargs):
        super().__init__(**kwargs)
        self.runner = runner
        self.timeout = timeout

    def lock(self) -> None:
        # Lock held only for the final rename: a GUI save between the read
        # and the rename is overwritten.
        logger.debug(f"Remote store on {self.runner.description}: writes are serialised by lockf {self.lock_path}")

    def unlock(self) -> None:
        pass

    def _run(self, command: str, action: str):
        result = self.runner.run(command, timeout=self.timeout)
        if result.returncode != 0:
            reason = (result.stderr or result.stdout or '').strip()
            raise ConfigStoreError(f'failed to {action} on {self.runner.description}: {reason}')
        return result

    def _read_document(self) -> str:
        result = self._run(f'cat {shlex.quote(self.config_path)}', f'read {self.config_path}')
        return result.stdout

    def _backup_previous(self, previous_time: str) -> None:
        if self.max_backups <= 0:
            return

        stamp = previous_time or str(int(time.time()))
        backup_dir = shlex.quote(self.backup_dir)
        backup = shlex.quote(f'{self.backup_dir}/config-{stamp}.xml')
        self._run(
            f'mkdir -p {backup_dir} && cp -p {shlex.quote(self.config_path)} {backup} && '
            f'ls -1t {backup_dir}/config-*.xml | tail -n +{self.max_backups + 1} | xargs rm -f',
            'back up the previous configuration'
        )

    def _write_document(self, document: str) -> None:
        remote_tmp = f'{self.config_path}.pfcert.tmp'
        fd, local_tmp = tempfile.mkstemp(prefix='pfcert-config.', suffix='.xml')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(document)

            result = self.runner.put_file(local_tmp, remote_tmp, timeout=self.timeout)
            if result.returncode != 0:
                reason = (result.stderr or result.stdout or '').strip()
                raise ConfigStoreError(f'failed to upload configuration to {self.runner.description}: {reason}')

            try:
                self._run(
                    f'lockf -k {shlex.quote(self.lock_path)} mv {shlex.quote(remote_tmp)} {shlex.quote(self.config_path)}',
                    f'replace {self.config_path}'
                )
            except ConfigStoreError:
                cleanup = self.runner.run(f'rm -f {shlex.quote(remote_tmp)}', timeout=self.timeout)
                if cleanup.returncode != 0:
                    logger.warning(f"⚠ Failed to remove {remote_tmp} on {self.runner.description}")
                raise
        finally:
            os.unlink(local_tmp)

    def _drop_cache(self) -> None:
        self._run(f'rm -f {shlex.quote(self.cache_path)}', 'drop the configuration cache')
