# pfservices.py - pfcert pfSense Service Layer
# Version 1.0 - October 2026
# Finds the services bound to a certificate and restarts them

import shlex
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, List, Optional

from certfunctions import LocalRunner
from pfconfig import element_text

logger = logging.getLogger(__name__)

#==============================================================================
# CONFIGURATION
#==============================================================================

DEFAULT_RESTART_TIMEOUT = 120

# {instance} is replaced with the shell-quoted instance identifier
RESTART_COMMANDS = {
    'webgui': '/etc/rc.restart_webgui',
    'openvpn-server': 'pfSsh.php playback svc restart openvpn server {instance}',
    'openvpn-client': 'pfSsh.php playback svc restart openvpn client {instance}',
    'ipsec': 'pfSsh.php playback svc restart ipsec',
    'captiveportal': 'pfSsh.php playback svc restart captiveportal {instance}',
    'unbound': 'pfSsh.php playback svc restart unbound',
}

#==============================================================================
# DATA CLASSES
#==============================================================================

@dataclass(frozen=True)
class ServiceReference:
    """A configured service that uses a certificate"""
    kind: str
    name: str
    cert_id: str
    instance: str = ""

    def __str__(self) -> str:
        return f"{self.kind} \"{self.name}\""


class ServiceRestartError(Exception):
    """A single service failed to restart"""

#==============================================================================
# SERVICE LAYER
#==============================================================================

class ServiceLayer:
    """
    Service bindings and restart primitives for a pfSense configuration.

    Bindings are read from the same document the ConfigStore holds, so the
    store must be loaded before consumers are listed.
    """

    def __init__(self, store, runner=None, timeout: int = DEFAULT_RESTART_TIMEOUT,
                 commands: Optional[Dict[str, str]] = None):
        self.store = store
        self.runner = runner or LocalRunner()
        self.timeout = int(timeout)
        self.commands = dict(RESTART_COMMANDS)
        if commands:
            self.commands.update(commands)

    @property
    def root(self) -> ET.Element:
        if self.store.root is None:
            self.store.load()
        return self.store.root

    def list_consumers(self, cert_id: str) -> List[ServiceReference]:
        """
        Enumerate enabled services configured with the given certificate.

        :param cert_id: Certificate refid
        :return: Service references in discovery order, possibly empty
        """
        root = self.root
        services = []

        if element_text(root.find('system/webgui'), 'ssl-certref') == cert_id:
            services.append(ServiceReference('webgui', 'webConfigurator', cert_id))

        for mode in ('server', 'client'):
            for vpn in root.findall(f'openvpn/openvpn-{mode}'):
                if element_text(vpn, 'certref') != cert_id or vpn.find('disable') is not None:
                    continue
                vpnid = element_text(vpn, 'vpnid')
                name = element_text(vpn, 'description') or f'OpenVPN {mode} {vpnid}'
                services.append(ServiceReference(f'openvpn-{mode}', name, cert_id, vpnid))

        # Every tunnel is served by one IPsec daemon
        tunnels = [
            element_text(phase1, 'descr') or element_text(phase1, 'ikeid')
            for phase1 in root.findall('ipsec/phase1')
            if element_text(phase1, 'certref') == cert_id and phase1.find('disabled') is None
        ]
        if tunnels:
            services.append(ServiceReference('ipsec', 'IPsec (' + ', '.join(tunnels) + ')', cert_id))

        portal = root.find('captiveportal')
        if portal is not None:
            for zone in portal:
                if element_text(zone, 'certref') != cert_id or zone.find('enable') is None:
                    continue
                zone_name = element_text(zone, 'zone') or zone.tag
                services.append(ServiceReference('captiveportal', f'Captive Portal {zone_name}', cert_id, zone_name))

        unbound = root.find('unbound')
        if unbound is not None and unbound.find('enable') is not None and element_text(unbound, 'sslcertref') == cert_id:
            services.append(ServiceReference('unbound', 'DNS Resolver', cert_id))

        return services

    def restart_command(self, service: ServiceReference) -> str:
        template = self.commands.get(service.kind)
        if not template:
            raise ServiceRestartError(f'no restart command configured for {service.kind}')
        return template.replace('{instance}', shlex.quote(service.instance))

    def restart(self, service: ServiceReference) -> None:
        """
        Restart one service and wait for the command to finish.

        :raises ServiceRestartError: on a non-zero exit or timeout
        """
        command = self.restart_command(service)
        logger.debug(f"Restarting {service} on {self.runner.description}: {command}")

        result = self.runner.run(command, timeout=self.timeout)
        if result.returncode != 0:
            reason = (result.stderr or result.stdout or '').strip() or f'exit status {result.returncode}'
            raise ServiceRestartError(f'{service}: {reason}')
