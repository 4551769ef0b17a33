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

"""Resolution of the settings of a Service load balancer.

Every overridable setting is taken from the Service annotation first, then
from the load balancer class selected by the Service and finally from the
[octavia_defaults] options.
"""

import dataclasses
import typing

from oslo_log import log as logging

from kuryr_octavia import capabilities as caps
from kuryr_octavia import constants as k_const
from kuryr_octavia.controller.drivers import public_ip
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import subnet_match
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)

_PROXY_PROTOCOLS = {
    'true': k_const.LB_PROTOCOL_PROXY,
    'v1': k_const.LB_PROTOCOL_PROXY,
    'v2': k_const.LB_PROTOCOL_PROXYV2,
    'false': None,
    '': None,
}


@dataclasses.dataclass(frozen=True)
class ServiceConfig(object):
    """Settings of one reconcile pass of a Service."""

    lb_name: str
    capabilities: caps.Capabilities
    internal: bool = False
    preferred_ip_family: typing.Optional[str] = None
    conn_limit: int = k_const.DEFAULT_CONN_LIMIT
    lb_id: str = ''
    lb_network_id: str = ''
    lb_subnet_id: str = ''
    lb_member_subnet_id: str = ''
    vip_port_id: str = ''
    loadbalancer_ip: str = ''
    public_network_id: str = ''
    public_subnet_spec: typing.Optional[subnet_match.SubnetSpec] = None
    proxy_protocol: typing.Optional[str] = None
    keep_client_ip: bool = False
    tls_container_ref: str = ''
    allowed_cidrs: typing.Optional[tuple] = None
    timeout_client_data: typing.Optional[int] = None
    timeout_member_connect: typing.Optional[int] = None
    timeout_member_data: typing.Optional[int] = None
    timeout_tcp_inspect: typing.Optional[int] = None
    flavor_id: str = ''
    availability_zone: str = ''
    enable_monitor: bool = False
    health_check_node_port: int = 0
    monitor_delay: int = 5
    monitor_timeout: int = 3
    monitor_max_retries: int = 1
    monitor_max_retries_down: int = 3
    lb_method: str = 'ROUND_ROBIN'
    session_persistence: typing.Optional[str] = None
    node_selector: frozenset = frozenset()
    config_class_name: str = ''
    keep_floating_ip: bool = False

    @property
    def provider(self):
        return self.capabilities.provider

    @property
    def supports_tags(self):
        return self.capabilities.tags


def _service_name(service):
    return utils.get_res_unique_name(service)


def _get_lb_class(service, options):
    name = utils.get_string_annotation(service, k_const.ANNOTATION_LB_CLASS)
    if not name:
        return '', None
    try:
        return name, options.lb_classes[name]
    except KeyError:
        raise k_exc.InvalidConfiguration(
            'Invalid loadbalancer class %r' % name)


def _from_class(lb_class, attr):
    if lb_class is None:
        return ''
    return getattr(lb_class, attr)


def _get_proxy_protocol(service, capabilities):
    value = utils.get_string_annotation(
        service, k_const.ANNOTATION_PROXY_PROTOCOL).strip().lower()
    try:
        protocol = _PROXY_PROTOCOLS[value]
    except KeyError:
        raise k_exc.InvalidConfiguration(
            'Invalid value %r of annotation %s, expecting one of true, '
            'false, v1 or v2' % (value, k_const.ANNOTATION_PROXY_PROTOCOL))
    if (protocol == k_const.LB_PROTOCOL_PROXYV2 and
            not capabilities.proxy_v2):
        raise k_exc.InvalidConfiguration(
            'PROXY protocol version 2 is not supported by the %s provider of '
            'this Octavia API' % capabilities.provider)
    return protocol


def _get_client_ip_settings(service, capabilities):
    keep_client_ip = utils.get_bool_annotation(
        service, k_const.ANNOTATION_X_FORWARDED_FOR, False)
    proxy_protocol = _get_proxy_protocol(service, capabilities)
    if proxy_protocol and keep_client_ip:
        raise k_exc.InvalidConfiguration(
            'Annotations %s and %s cannot be used together' %
            (k_const.ANNOTATION_PROXY_PROTOCOL,
             k_const.ANNOTATION_X_FORWARDED_FOR))
    return proxy_protocol, keep_client_ip


def _get_monitor_settings(service, options):
    enable_monitor = utils.get_bool_annotation(
        service, k_const.ANNOTATION_ENABLE_HEALTH_MONITOR,
        options.create_monitor)
    spec = service['spec']
    health_check_node_port = 0
    if (enable_monitor and
            spec.get('externalTrafficPolicy') ==
            k_const.K8S_EXTERNAL_TRAFFIC_POLICY_LOCAL and
            (spec.get('healthCheckNodePort') or 0) > 0):
        health_check_node_port = spec['healthCheckNodePort']
    return {
        'enable_monitor': enable_monitor,
        'health_check_node_port': health_check_node_port,
        'monitor_delay': utils.get_int_annotation(
            service, k_const.ANNOTATION_HEALTH_MONITOR_DELAY,
            options.monitor_delay),
        'monitor_timeout': utils.get_int_annotation(
            service, k_const.ANNOTATION_HEALTH_MONITOR_TIMEOUT,
            options.monitor_timeout),
        'monitor_max_retries': utils.get_int_annotation(
            service, k_const.ANNOTATION_HEALTH_MONITOR_MAX_RETRIES,
            options.monitor_max_retries),
        'monitor_max_retries_down': utils.get_int_annotation(
            service, k_const.ANNOTATION_HEALTH_MONITOR_MAX_RETRIES_DOWN,
            options.monitor_max_retries_down),
    }


def _get_session_persistence(service):
    if (service['spec'].get('sessionAffinity') ==
            k_const.K8S_SESSION_AFFINITY_CLIENT_IP):
        return k_const.SESSION_PERSISTENCE_SOURCE_IP
    return None


def get_node_selector(service, options):
    selector = utils.get_string_annotation(
        service, k_const.ANNOTATION_NODE_SELECTOR, options.node_selector)
    return utils.parse_node_selector(selector)


def _get_tls_container_ref(service, options, facade):
    ref = utils.get_string_annotation(
        service, k_const.ANNOTATION_TLS_CONTAINER_REF,
        options.default_tls_container_ref)
    # NOTE: with barbican the reference looks like
    # https://<keymanager>/v1/containers/<uuid>
    if ref and options.container_store == 'barbican':
        if not facade.container_exists(ref):
            raise k_exc.InvalidConfiguration(
                'TLS container %s does not exist' % ref)
        LOG.debug('Default TLS container %s found', ref)
    return ref


def get_subnet_id_for_node(facade, node, ip_family):
    """Finds the subnet of the node address among its server interfaces."""
    address = utils.get_node_address(node, ip_family)
    if not address:
        raise k_exc.ResourceNotFound('address of node %s' %
                                     node['metadata']['name'])
    instance_id = utils.get_node_instance_id(node)
    for interface in facade.server_interfaces(instance_id):
        for fixed_ip in interface.fixed_ips or []:
            if fixed_ip.get('ip_address') == address:
                return fixed_ip['subnet_id']
    raise k_exc.ResourceNotFound('subnet of node %s address %s' %
                                 (node['metadata']['name'], address))


def _get_lb_network_id(service, lb_class, options):
    return (utils.get_string_annotation(service,
                                        k_const.ANNOTATION_NETWORK_ID) or
            _from_class(lb_class, 'network_id') or options.network_id)


def _get_lb_subnet_id(service, lb_class, options):
    return (utils.get_string_annotation(service,
                                        k_const.ANNOTATION_SUBNET_ID) or
            _from_class(lb_class, 'subnet_id') or options.subnet_id)


def _get_member_subnet_id(service, lb_class, options):
    return (utils.get_string_annotation(
                service, k_const.ANNOTATION_MEMBER_SUBNET_ID) or
            _from_class(lb_class, 'member_subnet_id') or
            options.member_subnet_id)


def _get_public_subnet_spec(service, lb_class):
    spec = subnet_match.SubnetSpec()
    if lb_class is not None:
        if lb_class.floating_subnet_id:
            spec = subnet_match.SubnetSpec(lb_class.floating_subnet_id)
        else:
            spec = subnet_match.SubnetSpec(
                subnet=lb_class.floating_subnet,
                subnet_tags=lb_class.floating_subnet_tags)
    if spec.configured():
        return spec

    subnet_id = utils.get_string_annotation(
        service, k_const.ANNOTATION_FLOATING_SUBNET_ID)
    if subnet_id:
        return subnet_match.SubnetSpec(subnet_id)
    return subnet_match.SubnetSpec(
        subnet=utils.get_string_annotation(
            service, k_const.ANNOTATION_FLOATING_SUBNET),
        subnet_tags=utils.get_string_annotation(
            service, k_const.ANNOTATION_FLOATING_SUBNET_TAGS))


def _get_public_settings(service, lb_class, options, facade):
    name = _service_name(service)
    network_id = _from_class(lb_class, 'floating_network_id')
    if not network_id:
        network_id = utils.get_string_annotation(
            service, k_const.ANNOTATION_FLOATING_NETWORK_ID,
            options.floating_network_id)
    if not network_id:
        network_id = public_ip.get_floating_network_id(facade)
        if not network_id:
            LOG.warning('Failed to find floating-network-id for Service %s',
                        name)

    spec = _get_public_subnet_spec(service, lb_class)
    if not spec.configured():
        if options.floating_subnet_id:
            spec = subnet_match.SubnetSpec(options.floating_subnet_id)
        else:
            spec = subnet_match.SubnetSpec(
                subnet=options.floating_subnet,
                subnet_tags=options.floating_subnet_tags)

    if network_id and spec.subnet_id:
        subnet = facade.get_subnet(spec.subnet_id)
        if subnet is None:
            raise k_exc.InvalidConfiguration(
                'Failed to find floating subnet %s' % spec.subnet_id)
        if subnet.network_id != network_id:
            raise k_exc.InvalidConfiguration(
                'Floating IP subnet %s does not belong to the network %s' %
                (spec.subnet_id, network_id))

    if spec.configured():
        LOG.debug('Using %(spec)r for Service %(svc)s',
                  {'spec': spec, 'svc': name})
        return network_id, spec
    LOG.debug('No floating subnet configured for Service %s', name)
    return network_id, None


def _is_internal(service, options, ip_family):
    if options.internal_lb:
        if not utils.get_bool_annotation(
                service, k_const.ANNOTATION_INTERNAL_LB, False):
            LOG.debug('Enforcing internal load balancer for Service %s',
                      _service_name(service))
        return True
    if ip_family == k_const.IPv6:
        # Floating IPs are not supported in IPv6 networks.
        return True
    return utils.get_bool_annotation(service, k_const.ANNOTATION_INTERNAL_LB,
                                     False)


def _get_timeouts(service, capabilities):
    if not capabilities.timeouts:
        return {}
    return {
        'timeout_client_data': utils.get_int_annotation(
            service, k_const.ANNOTATION_TIMEOUT_CLIENT_DATA,
            k_const.DEFAULT_TIMEOUT_CLIENT_DATA),
        'timeout_member_connect': utils.get_int_annotation(
            service, k_const.ANNOTATION_TIMEOUT_MEMBER_CONNECT,
            k_const.DEFAULT_TIMEOUT_MEMBER_CONNECT),
        'timeout_member_data': utils.get_int_annotation(
            service, k_const.ANNOTATION_TIMEOUT_MEMBER_DATA,
            k_const.DEFAULT_TIMEOUT_MEMBER_DATA),
        'timeout_tcp_inspect': utils.get_int_annotation(
            service, k_const.ANNOTATION_TIMEOUT_TCP_INSPECT,
            k_const.DEFAULT_TIMEOUT_TCP_INSPECT),
    }


def resolve(service, nodes, options, capabilities, facade):
    """Builds the ServiceConfig used to ensure the Service load balancer.

    :param service: Kubernetes Service dict
    :param nodes: Kubernetes Node dicts, already filtered by node selector
    :param options: config.LoadBalancerOptions snapshot
    :param capabilities: capabilities.Capabilities of the provider
    :param facade: OctaviaDriver of the pass
    :raises InvalidConfiguration: on any invalid or conflicting setting
    """
    name = _service_name(service)
    if not nodes:
        raise k_exc.InvalidConfiguration(
            'There are no available nodes for LoadBalancer Service %s' % name)
    if not utils.get_service_ports(service):
        raise k_exc.InvalidConfiguration(
            'No ports provided for LoadBalancer Service %s' % name)

    ip_family = utils.get_preferred_ip_family(service)
    class_name, lb_class = _get_lb_class(service, options)
    internal = _is_internal(service, options, ip_family)

    network_id = _get_lb_network_id(service, lb_class, options)
    subnet_id = _get_lb_subnet_id(service, lb_class, options)
    member_subnet_id = options.subnet_id or subnet_id
    if not network_id and not subnet_id:
        try:
            subnet_id = get_subnet_id_for_node(facade, nodes[0], ip_family)
        except k_exc.ResourceNotFound as ex:
            raise k_exc.InvalidConfiguration(
                'Failed to get subnet to create load balancer for Service '
                '%s: %s' % (name, ex))
        member_subnet_id = subnet_id
    member_subnet_id = (_get_member_subnet_id(service, lb_class, options) or
                        member_subnet_id)

    public_network_id = ''
    public_subnet_spec = None
    if not internal:
        public_network_id, public_subnet_spec = _get_public_settings(
            service, lb_class, options, facade)

    proxy_protocol, keep_client_ip = _get_client_ip_settings(service,
                                                             capabilities)

    source_ranges = utils.get_source_ranges(service, ip_family)
    allowed_cidrs = None
    if capabilities.vip_acl:
        allowed_cidrs = source_ranges
    else:
        LOG.warning('LoadBalancerSourceRanges of Service %s is ignored, the '
                    'Octavia API does not support VIP ACLs', name)

    flavor_id = ''
    if capabilities.flavors:
        flavor_id = utils.get_string_annotation(
            service, k_const.ANNOTATION_FLAVOR_ID, options.flavor_id)

    availability_zone = utils.get_string_annotation(
        service, k_const.ANNOTATION_AVAILABILITY_ZONE,
        options.availability_zone)
    if availability_zone and not capabilities.availability_zones:
        LOG.warning("Load balancer availability zones aren't supported. "
                    "Please, upgrade Octavia API to version 2.14 or later "
                    "(Ussuri release) to use them")
        availability_zone = ''

    return ServiceConfig(
        lb_name=utils.get_loadbalancer_name(options.cluster_name, service),
        capabilities=capabilities,
        internal=internal,
        preferred_ip_family=ip_family,
        conn_limit=utils.get_int_annotation(
            service, k_const.ANNOTATION_CONN_LIMIT,
            k_const.DEFAULT_CONN_LIMIT),
        lb_id=utils.get_string_annotation(service, k_const.ANNOTATION_LB_ID),
        lb_network_id=network_id,
        lb_subnet_id=subnet_id,
        lb_member_subnet_id=member_subnet_id,
        vip_port_id=utils.get_string_annotation(service,
                                                k_const.ANNOTATION_PORT_ID),
        loadbalancer_ip=service['spec'].get('loadBalancerIP') or '',
        public_network_id=public_network_id,
        public_subnet_spec=public_subnet_spec,
        proxy_protocol=proxy_protocol,
        keep_client_ip=keep_client_ip,
        tls_container_ref=_get_tls_container_ref(service, options, facade),
        allowed_cidrs=allowed_cidrs,
        flavor_id=flavor_id,
        availability_zone=availability_zone,
        lb_method=options.lb_method,
        session_persistence=_get_session_persistence(service),
        node_selector=get_node_selector(service, options),
        config_class_name=class_name,
        keep_floating_ip=utils.get_bool_annotation(
            service, k_const.ANNOTATION_KEEP_FLOATING_IP, False),
        **_get_timeouts(service, capabilities),
        **_get_monitor_settings(service, options))


def resolve_for_update(service, nodes, options, capabilities, facade):
    """Builds the ServiceConfig used to refresh pools and members."""
    name = _service_name(service)
    if not utils.get_service_ports(service):
        raise k_exc.InvalidConfiguration(
            'No ports provided for LoadBalancer Service %s' % name)

    ip_family = utils.get_preferred_ip_family(service)
    class_name, lb_class = _get_lb_class(service, options)

    member_subnet_id = _get_member_subnet_id(service, lb_class, options)
    if not member_subnet_id:
        member_subnet_id = _get_lb_subnet_id(service, lb_class, options)
    if not member_subnet_id and nodes:
        try:
            member_subnet_id = get_subnet_id_for_node(facade, nodes[0],
                                                      ip_family)
        except k_exc.ResourceNotFound as ex:
            raise k_exc.InvalidConfiguration(
                'No subnet-id found for Service %s: %s' % (name, ex))

    proxy_protocol, keep_client_ip = _get_client_ip_settings(service,
                                                             capabilities)

    return ServiceConfig(
        lb_name=utils.get_loadbalancer_name(options.cluster_name, service),
        capabilities=capabilities,
        preferred_ip_family=ip_family,
        lb_id=utils.get_string_annotation(service, k_const.ANNOTATION_LB_ID),
        lb_member_subnet_id=member_subnet_id,
        proxy_protocol=proxy_protocol,
        keep_client_ip=keep_client_ip,
        tls_container_ref=utils.get_string_annotation(
            service, k_const.ANNOTATION_TLS_CONTAINER_REF,
            options.default_tls_container_ref),
        lb_method=options.lb_method,
        session_persistence=_get_session_persistence(service),
        node_selector=get_node_selector(service, options),
        config_class_name=class_name,
        **_get_monitor_settings(service, options))


def resolve_for_delete(service, options, capabilities):
    """Builds the ServiceConfig used to release the Service load balancer.

    Nothing is validated against the cloud, a Service being deleted must not
    get stuck on a setting that became invalid meanwhile.
    """
    return ServiceConfig(
        lb_name=utils.get_loadbalancer_name(options.cluster_name, service),
        capabilities=capabilities,
        lb_id=utils.get_string_annotation(service, k_const.ANNOTATION_LB_ID),
        keep_client_ip=utils.get_bool_annotation(
            service, k_const.ANNOTATION_X_FORWARDED_FOR, False),
        tls_container_ref=utils.get_string_annotation(
            service, k_const.ANNOTATION_TLS_CONTAINER_REF,
            options.default_tls_container_ref),
        keep_floating_ip=utils.get_bool_annotation(
            service, k_const.ANNOTATION_KEEP_FLOATING_IP, False))
