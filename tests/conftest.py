#!/usr/bin/env python3
# conftest.py - pfcert Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Shared fixtures for all test modules

import pytest
import os
import sys
import base64
import datetime
import tempfile
from unittest.mock import MagicMock, patch

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

# Add parent directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

from pfconfig import CertificateRecord, ConfigStore, ConfigStoreError
from pfservices import ServiceReference, ServiceRestartError

#==============================================================================
# HELPERS - Certificate Material
#==============================================================================

def make_certificate(common_name, issuer_cert=None, issuer_key=None):
    """Build a certificate, self-signed unless an issuer is given"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'pfcert tests'),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=90))
        .sign(issuer_key or key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode('utf-8')
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8')
    return cert, key, cert_pem, key_pem


def b64(value):
    return base64.b64encode(value.encode('utf-8')).decode('ascii')

#==============================================================================
# HELPERS - Collaborator Stubs
#==============================================================================

class FakeStore:
    """In-memory configuration store that records every call"""

    def __init__(self, records, fail_import=False, fail_persist=False):
        self.records = records
        self.fail_import = fail_import
        self.fail_persist = fail_persist
        self.imports = []
        self.persist_notes = []

    def lookup_records(self):
        return self.records

    def import_certificate(self, record, certificate, private_key):
        self.imports.append(record.id)
        if self.fail_import:
            raise ConfigStoreError('failed to read certificates from PEM data')
        record.certificate_data = certificate
        record.key_data = private_key

    def persist(self, note):
        if self.fail_persist:
            raise ConfigStoreError('No space left on device')
        self.persist_notes.append(note)


class FakeServices:
    """Service layer stub with configurable consumers and failing services"""

    def __init__(self, consumers=None, failing=()):
        self.consumers = consumers or {}
        self.failing = set(failing)
        self.listed = []
        self.restart_calls = []

    def list_consumers(self, cert_id):
        self.listed.append(cert_id)
        return list(self.consumers.get(cert_id, []))

    def restart(self, service):
        self.restart_calls.append(service)
        if service in self.failing:
            raise ServiceRestartError(f'{service}: exit status 1')

#==============================================================================
# FIXTURES - Certificate Material
#==============================================================================

@pytest.fixture(scope='session')
def ca_material():
    """A CA certificate and key"""
    cert, key, cert_pem, key_pem = make_certificate('pfcert Test CA')
    return {'cert': cert, 'key': key, 'cert_pem': cert_pem, 'key_pem': key_pem}


@pytest.fixture(scope='session')
def signed_material(ca_material):
    """A server certificate issued by the test CA"""
    cert, key, cert_pem, key_pem = make_certificate(
        'fw.example.net',
        issuer_cert=ca_material['cert'],
        issuer_key=ca_material['key']
    )
    return {'cert': cert, 'cert_pem': cert_pem + ca_material['cert_pem'], 'key_pem': key_pem}


@pytest.fixture(scope='session')
def self_signed_material():
    """A self-signed server certificate"""
    cert, key, cert_pem, key_pem = make_certificate('self-signed.example.net')
    return {'cert': cert, 'cert_pem': cert_pem, 'key_pem': key_pem}


@pytest.fixture(scope='session')
def ssh_host_key():
    """An OpenSSH public host key line"""
    key = ed25519.Ed25519PrivateKey.generate()
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH
    ).decode('ascii')

#==============================================================================
# FIXTURES - Collaborators
#==============================================================================

@pytest.fixture
def records():
    """Two certificate records, A and B"""
    return [
        CertificateRecord(id='A', description='Site A VPN', certificate_data='old1', key_data='oldkey1'),
        CertificateRecord(id='B', description='webConfigurator', certificate_data='old2', key_data='oldkey2'),
    ]


@pytest.fixture
def fake_store(records):
    return FakeStore(records)


@pytest.fixture
def svc1():
    return ServiceReference('webgui', 'webConfigurator', 'B')


@pytest.fixture
def svc2():
    return ServiceReference('openvpn-server', 'Road warriors', 'B', '1')


@pytest.fixture
def fake_services(svc1, svc2):
    return FakeServices(consumers={'B': [svc1, svc2]})

#==============================================================================
# FIXTURES - File System
#==============================================================================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def pfsense_xml(ca_material):
    """A pfSense configuration with two certificates and their services"""
    return f"""<?xml version="1.0"?>
<pfsense>
	<version>23.3</version>
	<system>
		<hostname>fw</hostname>
		<webgui>
			<protocol>https</protocol>
			<ssl-certref>cert-b</ssl-certref>
		</webgui>
	</system>
	<ca>
		<refid>ca-1</refid>
		<descr>Internal CA</descr>
		<crt>{b64(ca_material['cert_pem'])}</crt>
	</ca>
	<cert>
		<refid>cert-a</refid>
		<descr>Site A VPN</descr>
		<type>server</type>
		<crt>{b64('old1')}</crt>
		<prv>{b64('oldkey1')}</prv>
	</cert>
	<cert>
		<refid>cert-b</refid>
		<descr>webConfigurator default</descr>
		<type>server</type>
		<crt>{b64('old2')}</crt>
		<prv>{b64('oldkey2')}</prv>
	</cert>
	<openvpn>
		<openvpn-server>
			<vpnid>1</vpnid>
			<description>Road warriors</description>
			<certref>cert-b</certref>
		</openvpn-server>
		<openvpn-server>
			<vpnid>2</vpnid>
			<description>Retired</description>
			<disable></disable>
			<certref>cert-b</certref>
		</openvpn-server>
		<openvpn-client>
			<vpnid>3</vpnid>
			<description>Uplink</description>
			<certref>cert-a</certref>
		</openvpn-client>
	</openvpn>
	<ipsec>
		<phase1>
			<ikeid>1</ikeid>
			<descr>Site B</descr>
			<certref>cert-b</certref>
		</phase1>
		<phase1>
			<ikeid>2</ikeid>
			<descr>Site C</descr>
			<certref>cert-b</certref>
		</phase1>
		<phase1>
			<ikeid>3</ikeid>
			<descr>Old site</descr>
			<certref>cert-b</certref>
			<disabled></disabled>
		</phase1>
	</ipsec>
	<captiveportal>
		<guests>
			<zone>guests</zone>
			<enable></enable>
			<certref>cert-b</certref>
		</guests>
		<lobby>
			<zone>lobby</zone>
			<certref>cert-b</certref>
		</lobby>
	</captiveportal>
	<unbound>
		<enable></enable>
		<enablessl></enablessl>
		<sslcertref>cert-b</sslcertref>
	</unbound>
	<revision>
		<time>1700000000</time>
		<description>initial</description>
		<username>admin@10.0.0.1 (Local Database)</username>
	</revision>
</pfsense>
"""


@pytest.fixture
def pfsense_config(temp_dir, pfsense_xml):
    """Write the sample configuration into a conf/ directory"""
    conf_dir = os.path.join(temp_dir, 'conf')
    os.makedirs(conf_dir, exist_ok=True)
    config_path = os.path.join(conf_dir, 'config.xml')
    with open(config_path, 'w') as f:
        f.write(pfsense_xml)
    return config_path


@pytest.fixture
def store_paths(temp_dir, pfsense_config):
    """Keyword arguments pointing a ConfigStore at the temporary tree"""
    return {
        'config_path': pfsense_config,
        'lock_path': os.path.join(temp_dir, 'config.lock'),
        'cache_path': os.path.join(temp_dir, 'config.cache'),
        'backup_dir': os.path.join(temp_dir, 'conf', 'backup'),
        'max_backups': 3,
    }


@pytest.fixture
def config_store(store_paths):
    return ConfigStore(username='tester@fw (pfcert)', **store_paths)

#==============================================================================
# FIXTURES - Mock Command Execution
#==============================================================================

@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for command execution tests"""
    with patch('subprocess.run') as mock_run:
        mock_run.return_value = MagicMock(
            returncode=0,
            stdout='Success',
            stderr=''
        )
        yield mock_run


@pytest.fixture
def mock_runner():
    """Command runner that succeeds unless told otherwise"""
    runner = MagicMock()
    runner.description = 'admin@fw.example.net'
    runner.run.return_value = MagicMock(returncode=0, stdout='', stderr='')
    runner.put_file.return_value = MagicMock(returncode=0, stdout='', stderr='')
    return runner

#==============================================================================
# MARKERS
#==============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests that exercise real files end to end"
    )
