#!/usr/bin/env python3
# certupdate.py - pfcert Certificate Update
# Version 1.0 - October 2026
# Replaces one certificate in the pfSense configuration and restarts its services

"""
pfSense Certificate Update

Replaces a single certificate (and its private key) in the pfSense
configuration store, saves the configuration and restarts every service
that uses the certificate:

  1. Locate the certificate record by its refid
  2. Import the new certificate/key and persist the configuration
  3. Restart the services bound to the certificate

Runs either on the firewall itself or against a remote firewall over SSH.

Exit status:
  0  certificate updated and every dependent service restarted
  1  configuration, input or store access error
  3  no certificate with the given refid
  4  the store rejected the new material or failed to save it
  5  one or more dependent services failed to restart
"""

import sys
import json
import logging
import argparse
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

import certfunctions as cf
from certverify import VerificationResult, verify_served_certificate
from pfconfig import CertificateRecord, ConfigStore, ConfigStoreError, RemoteConfigStore
from pfservices import ServiceLayer, ServiceReference, ServiceRestartError

logger = logging.getLogger(__name__)

#==============================================================================
# EXIT CODES
#==============================================================================

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_NOT_FOUND = 3
EXIT_PERSIST_FAILED = 4
EXIT_RESTART_FAILED = 5

#==============================================================================
# ERRORS
#==============================================================================

class CertUpdateError(Exception):
    status = 'failed'
    exit_code = EXIT_USAGE


class CertificateNotFound(CertUpdateError):
    status = 'not-found'
    exit_code = EXIT_NOT_FOUND


class PersistError(CertUpdateError):
    status = 'persist-failed'
    exit_code = EXIT_PERSIST_FAILED


class RestartFailure(CertUpdateError):
    status = 'restart-failed'
    exit_code = EXIT_RESTART_FAILED

    def __init__(self, report: 'RestartReport'):
        self.report = report
        names = ', '.join(str(service) for service in report.failed)
        super().__init__(f'{len(report.failed)} of {len(report.attempted)} services failed to restart: {names}')

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass
class RestartReport:
    """Outcome of restarting the services bound to a certificate"""
    attempted: List[ServiceReference] = field(default_factory=list)
    restarted: List[ServiceReference] = field(default_factory=list)
    failed: List[ServiceReference] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class UpdateResult:
    """Complete result of one update run"""
    cert_id: str
    description: str = ""
    status: str = "pending"  # updated, dry-run, not-found, persist-failed, restart-failed
    exit_code: int = EXIT_OK
    message: str = ""
    consumers: List[ServiceReference] = field(default_factory=list)
    restart: Optional[RestartReport] = None
    verification: Optional[VerificationResult] = None

    def fail(self, error: CertUpdateError) -> 'UpdateResult':
        self.status = error.status
        self.exit_code = error.exit_code
        self.message = str(error)
        return self

    def to_dict(self) -> Dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

#==============================================================================
# PIPELINE
#==============================================================================

def change_note(record: CertificateRecord) -> str:
    return f'pfcert: remote update of certificate "{record.description}" ({record.id})'


def find_certificate(records: List[CertificateRecord], cert_id: str) -> CertificateRecord:
    """
    Find the certificate record with the given identifier.

    Records are scanned in store order and the first match wins. Duplicate
    identifiers should not exist; if they do they are reported and the first
    one is used.

    :param records: Live records from the configuration store
    :param cert_id: Exact identifier to match
    :return: The matching record itself, not a copy
    :raises CertificateNotFound: if no record has the identifier
    """
    if not cert_id:
        raise ValueError('certificate identifier must not be empty')

    matches = [record for record in records if record.id == cert_id]
    if not matches:
        raise CertificateNotFound(f"couldn't find certificate with refid {cert_id}")

    if len(matches) > 1:
        descriptions = ', '.join(f'"{record.description}"' for record in matches)
        logger.warning(f"⚠ {len(matches)} certificates share refid {cert_id} ({descriptions}); using the first")

    return matches[0]


def apply_certificate(store, record: CertificateRecord, certificate: str, private_key: str,
                      note: Optional[str] = None) -> None:
    """
    Overwrite a record's certificate and key and persist the configuration.

    :param store: Configuration store owning the record
    :param record: Record returned by find_certificate
    :param certificate: New PEM certificate (chain)
    :param private_key: New PEM private key
    :param note: Change description for the configuration history
    :raises PersistError: if the store rejects the material or cannot save
    """
    if not certificate or not private_key:
        raise ValueError('certificate and private key must not be empty')

    note = note or change_note(record)
    logger.info(f"updating certificate \"{record.description}\" ({record.id}).")

    try:
        store.import_certificate(record, certificate, private_key)
        store.persist(note)
    except ConfigStoreError as e:
        raise PersistError(f"failed to update certificate \"{record.description}\" ({record.id}): {e}") from e

    logger.info(f"✓ certificate \"{record.description}\" ({record.id}) updated and configuration saved.")


def restart_dependents(services, cert_id: str) -> RestartReport:
    """
    Restart every service bound to a certificate.

    A failing service does not stop the remaining restarts; every failure is
    collected in the returned report.

    :param services: Service layer providing list_consumers() and restart()
    :param cert_id: Identifier of the updated certificate
    :return: RestartReport
    """
    logger.info("restarting all services used by certificate.")
    report = RestartReport()

    consumers = services.list_consumers(cert_id)
    if not consumers:
        logger.info("  no services use this certificate")

    for service in consumers:
        report.attempted.append(service)
        try:
            services.restart(service)
        except ServiceRestartError as e:
            logger.error(f"  ✗ {service} failed to restart: {e}")
            report.failed.append(service)
            report.errors[str(service)] = str(e)
            continue
        logger.info(f"  ✓ restarted {service}")
        report.restarted.append(service)

    logger.info("complete.")
    return report


def run_update(store, services, cert_id: str, certificate: str, private_key: str,
               note: Optional[str] = None, dry_run: bool = False) -> UpdateResult:
    """
    Locate, replace-and-persist, then restart dependents.

    Nothing is changed when the certificate is missing, and nothing is
    restarted when the store fails to save.

    :return: UpdateResult carrying the exit code for the run
    """
    result = UpdateResult(cert_id=cert_id)

    try:
        record = find_certificate(store.lookup_records(), cert_id)
    except CertificateNotFound as e:
        logger.error(str(e))
        return result.fail(e)

    result.description = record.description

    if dry_run:
        result.consumers = services.list_consumers(cert_id)
        logger.info(f"[DRY RUN] Would update certificate \"{record.description}\" ({record.id})")
        for service in result.consumers:
            logger.info(f"[DRY RUN] Would restart {service}")
        result.status = 'dry-run'
        return result

    try:
        apply_certificate(store, record, certificate, private_key, note)
    except PersistError as e:
        logger.error(str(e))
        return result.fail(e)

    report = restart_dependents(services, cert_id)
    result.restart = report
    result.consumers = list(report.attempted)

    if report.failed:
        failure = RestartFailure(report)
        logger.error(str(failure))
        return result.fail(failure)

    result.status = 'updated'
    return result

#==============================================================================
# CONFIGURATION
#==============================================================================

def build_store(config: Dict, runner) -> ConfigStore:
    """Return the local or remote configuration store described by config."""
    kwargs = {
        'config_path': config['config_path'],
        'lock_path': config['lock_path'],
        'cache_path': config['cache_path'],
        'backup_dir': config['backup_dir'],
        'max_backups': config['max_backups'],
    }
    if config.get('host'):
        return RemoteConfigStore(runner, **kwargs)
    return ConfigStore(**kwargs)


def apply_overrides(config: Dict, args: argparse.Namespace) -> Dict:
    """Apply command line arguments on top of the loaded configuration."""
    overrides = {
        'config_path': args.config_xml,
        'refid': args.refid,
        'certificate_path': args.certificate,
        'key_path': args.key,
        'host': args.host,
        'ssh_user': args.ssh_user,
        'ssh_port': args.ssh_port,
        'ssh_password': args.ssh_password,
        'ssh_identity': args.ssh_identity,
        'ssh_host_key': args.ssh_host_key,
        'restart_timeout': args.restart_timeout,
        'verify_url': args.verify_url,
    }
    for key, value in overrides.items():
        if value is not None and value != '':
            config[key] = value
    return config


def load_material(config: Dict, required: bool = True):
    """
    Read the certificate and private key named in the configuration.

    :return: Tuple of (certificate, private_key); empty strings when not
             required and not configured
    :raises cf.ConfigError: if material is missing or unreadable
    """
    cert_source = config.get('certificate_path') or ''
    key_source = config.get('key_path') or ''

    if cert_source == '-' and key_source == '-':
        raise cf.ConfigError('only one of the certificate and private key can be read from stdin')

    if not required and not (cert_source and key_source):
        return '', ''

    missing = [name for name, value in (('certificate_path', cert_source), ('key_path', key_source)) if not value]
    if missing:
        raise cf.ConfigError(f"Missing required configuration: {', '.join(missing)}")

    return cf.read_blob(cert_source, 'certificate'), cf.read_blob(key_source, 'private key')

#==============================================================================
# MAIN ENTRY POINT
#==============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replace a pfSense certificate and restart the services that use it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Update on the firewall itself
  pfcert-update --refid 5f1e2a3b4c5d6 --certificate fullchain.pem --key key.pem

  # Update a remote firewall over SSH with a key
  pfcert-update --host fw.example.net --ssh-identity ~/.ssh/id_ed25519 \\
      --ssh-host-key "$(cat fw_host_key.pub)" --refid 5f1e2a3b4c5d6 --certificate fullchain.pem --key key.pem

  # Show what would be restarted without changing anything
  pfcert-update --config /etc/pfcert.json --dry-run

  # Read paths from systemd credentials
  pfcert-update --certificate '$CREDENTIALS_DIRECTORY/fullchain.pem' \\
      --key '$CREDENTIALS_DIRECTORY/key.pem' --refid 5f1e2a3b4c5d6

Exit status: 0 success, 1 configuration error, 3 refid not found,
4 persist failed, 5 one or more restarts failed.
        """
    )

    parser.add_argument('--config', type=str, help='Path to JSON configuration file')
    parser.add_argument('--refid', type=str, help='Certificate reference ID to update')
    parser.add_argument('--certificate', type=str, help="PEM certificate chain file ('-' for stdin)")
    parser.add_argument('--key', type=str, help="PEM private key file ('-' for stdin)")
    parser.add_argument('--note', type=str, help='Change description recorded in the configuration history')

    parser.add_argument('--config-xml', type=str, help='Path of config.xml on the firewall')
    parser.add_argument('--host', type=str, help='Remote firewall to update over SSH')
    parser.add_argument('--ssh-user', type=str, help='SSH username (default: admin)')
    parser.add_argument('--ssh-port', type=int, help='SSH port (default: 22)')
    parser.add_argument('--ssh-password', type=str, help='SSH password (uses sshpass)')
    parser.add_argument('--ssh-identity', type=str, help='SSH private key file')
    parser.add_argument('--ssh-host-key', type=str, help="Firewall public host key ('ssh-ed25519 AAAA...') or 'ignore'")

    parser.add_argument('--restart-timeout', type=int, help='Seconds to wait for each service restart')
    parser.add_argument('--verify-url', type=str, help='https URL to check for the new certificate after restarts')

    parser.add_argument('--dry-run', action='store_true', help='Locate the certificate and list services without changing anything')
    parser.add_argument('--json', action='store_true', help='Also print the result as JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    return parser.parse_args(argv)


def print_summary(result: UpdateResult) -> None:
    cf.print_banner("CERTIFICATE UPDATE SUMMARY")
    label = f"\"{result.description}\" ({result.cert_id})" if result.description else result.cert_id
    print(f"Certificate: {label}")
    print(f"Status: {result.status}")
    if result.message:
        print(f"Message: {result.message}")

    if result.restart:
        print()
        for service in result.restart.restarted:
            print(f"  ✓ RESTARTED: {service}")
        for service in result.restart.failed:
            print(f"  ✗ FAILED: {service} - {result.restart.errors.get(str(service), '')}")
        if not result.restart.attempted:
            print("  No services use this certificate")
    elif result.status == 'dry-run':
        print()
        for service in result.consumers:
            print(f"  WOULD RESTART: {service}")

    if result.verification:
        mark = "✓" if result.verification.matched else "⚠"
        print(f"\n{mark} Verification: {result.verification.message}")


def main(argv=None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    cf.setup_logging(args.verbose)

    try:
        config = apply_overrides(cf.load_config(args.config), args)
        if not config.get('refid'):
            raise cf.ConfigError('Missing required configuration: refid')
        certificate, private_key = load_material(config, required=not args.dry_run)
        runner = cf.build_runner(config)
    except cf.ConfigError as e:
        logger.error(str(e))
        return EXIT_USAGE

    if args.dry_run:
        logger.info("DRY RUN MODE - No changes will be made")

    try:
        store = build_store(config, runner)
        services = ServiceLayer(
            store,
            runner,
            timeout=config['restart_timeout'],
            commands=config.get('restart_commands')
        )
        logger.info(f"Configuration store: {store.config_path} on {runner.description}")

        with store:
            result = run_update(
                store,
                services,
                config['refid'],
                certificate,
                private_key,
                note=args.note,
                dry_run=args.dry_run
            )
    except ConfigStoreError as e:
        logger.error(f"Failed to load configuration: {e}")
        return EXIT_USAGE
    finally:
        runner.close()

    if config.get('verify_url') and result.status == 'updated':
        result.verification = verify_served_certificate(
            config['verify_url'],
            certificate,
            timeout=config['verify_timeout']
        )
        if result.verification.matched:
            logger.info(f"✓ {result.verification.message}")
        else:
            logger.warning(f"⚠ {result.verification.message}")

    print_summary(result)

    if args.json:
        print(result.to_json())

    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
