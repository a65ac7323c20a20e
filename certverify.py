# certverify.py - pfcert Served Certificate Verification
# Version 1.0 - October 2026
# Confirms a restarted service is presenting the newly installed certificate

import ssl
import time
import logging
from dataclasses import dataclass, asdict
from typing import Dict
from urllib.parse import urlparse

import requests
import urllib3
from cryptography import x509
from cryptography.hazmat.primitives import hashes

logger = logging.getLogger(__name__)

# The firewall may still be presenting a self-signed certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class VerificationResult:
    """Outcome of comparing a served certificate with the expected one"""
    url: str
    matched: bool
    expected_fingerprint: str
    served_fingerprint: str = ""
    message: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)

#==============================================================================
# FUNCTIONS
#==============================================================================

def certificate_fingerprint(pem: str) -> str:
    """SHA-256 fingerprint of the first certificate in a PEM blob"""
    leaf = x509.load_pem_x509_certificates(pem.encode('utf-8'))[0]
    return leaf.fingerprint(hashes.SHA256()).hex(':').upper()


def wait_for_url(url: str, timeout: int = 120, interval: int = 5) -> bool:
    """
    Wait until a URL answers at all.

    Any HTTP response counts: after a webGUI restart the question is whether
    the listener is back, not what it returns.

    :param url: URL to poll
    :param timeout: Seconds to keep trying
    :param interval: Seconds between attempts
    :return: True once the URL responded, False on timeout
    """
    session = requests.Session()
    session.trust_env = False  # Ignore proxy environment vars
    deadline = time.time() + timeout

    while True:
        try:
            session.get(url, verify=False, timeout=10)
            return True
        except requests.RequestException as e:
            logger.debug(f"{url} not answering yet: {e}")
        if time.time() >= deadline:
            return False
        time.sleep(interval)


def get_served_certificate(host: str, port: int, timeout: int = 10) -> str:
    """Fetch the PEM leaf certificate a TLS endpoint presents"""
    return ssl.get_server_certificate((host, port), timeout=timeout)


def verify_served_certificate(url: str, expected_pem: str, timeout: int = 120,
                              interval: int = 5) -> VerificationResult:
    """
    Check that the endpoint behind url presents expected_pem.

    :param url: https URL of the restarted service
    :param expected_pem: Newly installed certificate chain
    :return: VerificationResult; never raises for network problems
    """
    parsed = urlparse(url)
    host = parsed.hostname or ''
    port = parsed.port or 443
    expected = certificate_fingerprint(expected_pem)

    logger.info(f"Verifying certificate served by {host}:{port}...")

    if not wait_for_url(url, timeout=timeout, interval=interval):
        return VerificationResult(url, False, expected, message=f'{url} did not respond within {timeout}s')

    try:
        served = certificate_fingerprint(get_served_certificate(host, port))
    except (OSError, ValueError) as e:
        return VerificationResult(url, False, expected, message=f'failed to fetch certificate from {host}:{port}: {e}')

    if served == expected:
        return VerificationResult(url, True, expected, served, 'served certificate matches')
    return VerificationResult(url, False, expected, served, 'served certificate differs from the new certificate')
