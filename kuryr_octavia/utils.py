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

import netaddr
from oslo_log import log

from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc

LOG = log.getLogger(__name__)


def get_res_unique_name(resource):
    """Returns a unique name for the resource like Service or Node.

    It returns a unique name for the resource composed of its name and the
    namespace it is created in or just name for cluster-scoped resources.

    :returns: String with <namespace/>name of the resource
    """
    try:
        return "%(namespace)s/%(name)s" % resource['metadata']
    except KeyError:
        return "%(name)s" % resource['metadata']


def cut_string(name, length=k_const.MAX_NAME_LENGTH):
    return name[:length]


def get_loadbalancer_name(cluster_name, service):
    meta = service['metadata']
    return cut_string('%s%s_%s_%s' % (k_const.SERVICE_PREFIX, cluster_name,
                                      meta['namespace'], meta['name']))


def get_loadbalancer_legacy_name(service):
    uid = service['metadata'].get('uid', '')
    return cut_string('a' + uid.replace('-', ''),
                      k_const.LEGACY_NAME_LENGTH)


def get_security_group_name(service):
    meta = service['metadata']
    return cut_string('lb-sg-%s-%s-%s' % (meta.get('uid', ''),
                                          meta['namespace'], meta['name']))


def get_listener_name(index, lb_name):
    return cut_string('listener_%d_%s' % (index, lb_name))


def get_pool_name(index, lb_name):
    return cut_string('pool_%d_%s' % (index, lb_name))


def get_monitor_name(index, lb_name):
    return cut_string('monitor_%d_%s' % (index, lb_name))


def _get_annotations(service):
    return service['metadata'].get('annotations') or {}


def get_string_annotation(service, key, default=''):
    annotations = _get_annotations(service)
    if key in annotations:
        # NOTE: an empty value is a valid setting, e.g. it allows to create
        # a load balancer without floating IP.
        return annotations[key]
    return default


def get_int_annotation(service, key, default):
    annotations = _get_annotations(service)
    if key not in annotations:
        return default
    try:
        return int(annotations[key])
    except ValueError:
        LOG.warning('Could not parse int value from %(value)r, falling back '
                    'to default %(key)s = %(default)s',
                    {'value': annotations[key], 'key': key,
                     'default': default})
        return default


def get_bool_annotation(service, key, default):
    value = _get_annotations(service).get(key)
    if value == 'true':
        return True
    if value == 'false':
        return False
    return default


def get_service_ports(service):
    return service['spec'].get('ports') or []


def get_preferred_ip_family(service):
    families = service['spec'].get('ipFamilies') or []
    # Multiple load balancers per Service are not supported, the first
    # family determines the family of the load balancer.
    return families[0] if families else None


def _matches_family(address, ip_family):
    if ip_family is None:
        return True
    try:
        version = netaddr.IPAddress(address).version
    except (netaddr.AddrFormatError, ValueError):
        return False
    return version == (6 if ip_family == k_const.IPv6 else 4)


def get_node_address(node, ip_family=None):
    """Returns the address a node is reachable at from the load balancer.

    Internal addresses are preferred over external ones. When an IP family is
    given only addresses of that family qualify. Returns None when the node
    has no qualifying address.
    """
    addresses = node.get('status', {}).get('addresses') or []
    for addr_type in (k_const.K8S_NODE_INTERNAL_IP,
                      k_const.K8S_NODE_EXTERNAL_IP):
        for addr in addresses:
            if (addr.get('type') == addr_type and
                    _matches_family(addr.get('address'), ip_family)):
                return addr['address']
    return None


def get_node_instance_id(node):
    provider_id = node.get('spec', {}).get('providerID', '')
    return provider_id.rsplit('/', 1)[-1]


def parse_node_selector(selector):
    """Parses 'key=value,key2' into a frozenset of (key, value) pairs.

    A key without value is stored with None and only requires the label to
    exist on the node.
    """
    labels = set()
    for item in selector.split(','):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition('=')
        key = key.strip()
        if not key:
            raise k_exc.InvalidConfiguration(
                'Invalid node selector %r' % selector)
        labels.add((key, value.strip() if sep else None))
    return frozenset(labels)


def filter_nodes(nodes, node_selector):
    if not node_selector:
        return list(nodes)
    selected = []
    for node in nodes:
        labels = node['metadata'].get('labels') or {}
        if all(key in labels and (value is None or labels[key] == value)
               for key, value in node_selector):
            selected.append(node)
    return selected


def get_source_ranges(service, ip_family=None):
    """Returns the normalized CIDRs allowed to reach the load balancer."""
    ranges = service['spec'].get('loadBalancerSourceRanges') or []
    source = 'spec.loadBalancerSourceRanges'
    if not ranges:
        source = k_const.ANNOTATION_SOURCE_RANGES
        value = get_string_annotation(
            service, k_const.ANNOTATION_SOURCE_RANGES).strip()
        if not value:
            if ip_family == k_const.IPv6:
                value = k_const.DEFAULT_SOURCE_RANGE_IPV6
            else:
                value = k_const.DEFAULT_SOURCE_RANGE_IPV4
        ranges = value.split(',')

    cidrs = set()
    for cidr in ranges:
        try:
            cidrs.add(str(netaddr.IPNetwork(cidr.strip()).cidr))
        except (netaddr.AddrFormatError, ValueError):
            raise k_exc.InvalidConfiguration(
                '%s: %r is not valid. Expecting a list of IP ranges, for '
                'example 10.0.0.0/24' % (source, ranges))
    return tuple(sorted(cidrs))


def get_ethertype(cidr):
    if netaddr.IPNetwork(cidr).version == 6:
        return k_const.SG_ETHERTYPE_IPV6
    return k_const.SG_ETHERTYPE_IPV4
