# Copyright (c) 2016 Mirantis, Inc.
# All Rights Reserved.
#
#    Licensed under the Apache License, Version 2.0 (the "License"); you may
#    not use this file except in compliance with the License. You may obtain
#    a copy of the License at
#
#         http://www.apache.org/licenses/LICENSE-2.0
#
#    Unless required by applicable law or agreed to in writing, software
#    distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
#    WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the
#    License for the specific language governing permissions and limitations
#    under the License.

import dataclasses

from openstack import exceptions as os_exc
from oslo_config import cfg
from oslo_log import log as logging
from oslo_utils import versionutils

from kuryr_octavia import clients
from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc

CONF = cfg.CONF
LOG = logging.getLogger(__name__)

TAGS = 'tags'
TIMEOUTS = 'timeouts'
VIP_ACL = 'vip_acl'
FLAVORS = 'flavors'
AVAILABILITY_ZONES = 'availability_zones'
HTTP_MONITORS_ON_UDP = 'http_monitors_on_udp'
PROXY_V2 = 'proxy_v2'
SERIAL_API = 'serial_api'

# Minimum Octavia API version of each feature.
_FEATURE_VERSIONS = {
    TAGS: (2, 5),
    TIMEOUTS: (2, 1),
    VIP_ACL: (2, 12),
    FLAVORS: (2, 6),
    AVAILABILITY_ZONES: (2, 14),
    HTTP_MONITORS_ON_UDP: (2, 16),
    PROXY_V2: (2, 22),
}
# NOTE: the ovn provider only honours resource tags, everything else is
# either ignored or rejected by it.
_OVN_FEATURES = frozenset([TAGS])


@dataclasses.dataclass(frozen=True)
class Capabilities(object):
    """Octavia features available for one provider.

    Built once per pass, the version reported by Octavia does not change
    while a Service is reconciled.
    """

    provider: str
    version: tuple = (0, 0)
    features: frozenset = frozenset()

    def supports(self, feature):
        return feature in self.features

    @property
    def tags(self):
        return TAGS in self.features

    @property
    def timeouts(self):
        return TIMEOUTS in self.features

    @property
    def vip_acl(self):
        return VIP_ACL in self.features

    @property
    def flavors(self):
        return FLAVORS in self.features

    @property
    def availability_zones(self):
        return AVAILABILITY_ZONES in self.features

    @property
    def http_monitors_on_udp(self):
        return HTTP_MONITORS_ON_UDP in self.features

    @property
    def proxy_v2(self):
        return PROXY_V2 in self.features

    @property
    def serial_api(self):
        return SERIAL_API in self.features


def get_octavia_version():
    lbaas = clients.get_loadbalancer_client()
    region_name = getattr(CONF.neutron, 'region_name', None)

    regions = lbaas.get_all_version_data()
    # If region was specified take it, otherwise just take first as default
    endpoints = regions.get(region_name, list(regions.values())[0])
    # Take the first endpoint
    services = list(endpoints.values())[0]
    # Try load-balancer service, if not take the first
    versions = services.get('load-balancer', list(services.values())[0])
    # Lookup the latest version. For safety, we won't look for
    # version['status'] == 'CURRENT' and assume it's the maximum. Also we
    # won't assume this dict is sorted.
    max_ver = 0, 0
    for version in versions:
        if version.get('version') is None:
            raise k_exc.UnreachableOctavia('Unable to reach Octavia API')
        v_tuple = versionutils.convert_version_to_tuple(
            version['version'])
        if v_tuple > max_ver:
            max_ver = v_tuple

    LOG.debug("Detected Octavia version %d.%d", *max_ver)
    return max_ver


def build(provider, version, serial_api_providers=()):
    features = set(feature for feature, min_version
                   in _FEATURE_VERSIONS.items() if version >= min_version)
    if provider == k_const.OVN_PROVIDER:
        features &= _OVN_FEATURES
    if provider in serial_api_providers:
        features.add(SERIAL_API)
    return Capabilities(provider=provider, version=version,
                        features=frozenset(features))


def discover(provider, serial_api_providers=()):
    """Returns the capability table of provider.

    An unreachable Octavia API results in a table without any version
    dependent feature, the caller degrades instead of failing.
    """
    try:
        version = get_octavia_version()
    except (k_exc.UnreachableOctavia, os_exc.SDKException,
            IndexError) as ex:
        LOG.warning('Failed to get current Octavia API version, assuming no '
                    'optional feature is available: %s', ex)
        version = (0, 0)
    return build(provider, version, serial_api_providers)
