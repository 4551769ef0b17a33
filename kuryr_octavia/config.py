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
import sys
import types

from kuryr.lib._i18n import _
from kuryr.lib import config as lib_config
from oslo_config import cfg
from oslo_log import log as logging

from kuryr_octavia import version

LOG = logging.getLogger(__name__)

LB_CLASS_GROUP_PREFIX = 'lb_class:'

octavia_defaults = [
    cfg.StrOpt('cluster_name',
               help=_("Name of the Kubernetes cluster. It is part of the "
                      "generated load balancer names and descriptions."),
               default='kubernetes'),
    cfg.StrOpt('lb_provider',
               help=_("Octavia provider used to create load balancers."),
               default='amphora'),
    cfg.StrOpt('lb_method',
               help=_("The load-balancer algorithm that distributes traffic "
                      "to the pool members. The options are: ROUND_ROBIN, "
                      "LEAST_CONNECTIONS, SOURCE_IP and SOURCE_IP_PORT."),
               default='ROUND_ROBIN'),
    cfg.StrOpt('subnet_id',
               help=_("Neutron subnet ID used for the load balancer VIP."),
               default=''),
    cfg.StrOpt('network_id',
               help=_("Neutron network ID used for the load balancer VIP."),
               default=''),
    cfg.StrOpt('member_subnet_id',
               help=_("Neutron subnet ID the pool members live in. Defaults "
                      "to the VIP subnet."),
               default=''),
    cfg.StrOpt('floating_network_id',
               help=_("External network floating IPs are allocated from."),
               default=''),
    cfg.StrOpt('floating_subnet_id',
               help=_("External subnet floating IPs are allocated from."),
               default=''),
    cfg.StrOpt('floating_subnet',
               help=_("Name pattern of the external subnets floating IPs are "
                      "allocated from. A leading '!' negates the pattern, a "
                      "leading '~' makes it a regular expression, otherwise "
                      "it is a glob."),
               default=''),
    cfg.StrOpt('floating_subnet_tags',
               help=_("Comma separated tags of the external subnets floating "
                      "IPs are allocated from. A leading '!' negates the "
                      "match, a leading '&' requires all the tags."),
               default=''),
    cfg.ListOpt('lb_classes',
                help=_("Names of the load balancer classes Services can "
                       "select with the class annotation. Each class is "
                       "configured in a [lb_class:<name>] section."),
                default=[]),
    cfg.BoolOpt('create_monitor',
                help=_("Create a health monitor for every pool."),
                default=False),
    cfg.IntOpt('monitor_delay',
               help=_("Health monitor probe interval in seconds."),
               default=5),
    cfg.IntOpt('monitor_timeout',
               help=_("Health monitor probe timeout in seconds."),
               default=3),
    cfg.IntOpt('monitor_max_retries',
               help=_("Successful probes before a member becomes ONLINE."),
               default=1),
    cfg.IntOpt('monitor_max_retries_down',
               help=_("Failed probes before a member becomes ERROR."),
               default=3),
    cfg.BoolOpt('manage_security_groups',
                help=_("Create a security group per Service and attach it to "
                       "the node ports."),
                default=False),
    cfg.ListOpt('node_security_group_ids',
                help=_("Security groups of the nodes. Rules for a Service are "
                       "removed from them when the Service is deleted."),
                default=[]),
    cfg.BoolOpt('internal_lb',
                help=_("Never allocate floating IPs, all the load balancers "
                       "are internal."),
                default=False),
    cfg.BoolOpt('cascade_delete',
                help=_("Use Octavia cascade delete to remove load "
                       "balancers."),
                default=True),
    cfg.StrOpt('flavor_id',
               help=_("Octavia flavor used for new load balancers."),
               default=''),
    cfg.StrOpt('availability_zone',
               help=_("Octavia availability zone used for new load "
                      "balancers."),
               default=''),
    cfg.IntOpt('max_shared_lb',
               help=_("Maximum number of Services sharing a load balancer."),
               default=2, min=1),
    cfg.BoolOpt('enable_ingress_hostname',
                help=_("Report a fake hostname instead of the IP in the "
                       "Service status when PROXY protocol is used."),
                default=False),
    cfg.StrOpt('ingress_hostname_suffix',
               help=_("Suffix of the fake ingress hostname."),
               default='nip.io'),
    cfg.StrOpt('default_tls_container_ref',
               help=_("Reference of the TLS container used by listeners "
                      "terminating HTTPS."),
               default=''),
    cfg.StrOpt('container_store',
               help=_("Store holding the TLS containers. With 'barbican' the "
                      "container existence is verified."),
               default='barbican'),
    cfg.StrOpt('node_selector',
               help=_("Comma separated key=value labels selecting the nodes "
                      "used as members. A key without value only requires "
                      "the label to be present."),
               default=''),
    cfg.ListOpt('serial_api_providers',
                help=_("Octavia providers that can not handle batch member "
                       "updates. Members are reconciled one by one for "
                       "them."),
                default=[]),
    cfg.IntOpt('lbaas_activation_timeout',
               help=_("Time (in seconds) that a load balancer can take to "
                      "become ACTIVE after a change."),
               default=300),
]

lb_class_opts = [
    cfg.StrOpt('floating_network_id', default=''),
    cfg.StrOpt('floating_subnet_id', default=''),
    cfg.StrOpt('floating_subnet', default=''),
    cfg.StrOpt('floating_subnet_tags', default=''),
    cfg.StrOpt('network_id', default=''),
    cfg.StrOpt('subnet_id', default=''),
    cfg.StrOpt('member_subnet_id', default=''),
]

CONF = cfg.CONF
CONF.register_opts(octavia_defaults, group='octavia_defaults')

lib_config.register_neutron_opts(CONF)

logging.register_options(CONF)


@dataclasses.dataclass(frozen=True)
class LBClass(object):
    floating_network_id: str = ''
    floating_subnet_id: str = ''
    floating_subnet: str = ''
    floating_subnet_tags: str = ''
    network_id: str = ''
    subnet_id: str = ''
    member_subnet_id: str = ''


@dataclasses.dataclass(frozen=True)
class LoadBalancerOptions(object):
    """Snapshot of [octavia_defaults] taken at the start of a pass."""

    cluster_name: str
    lb_provider: str
    lb_method: str
    subnet_id: str
    network_id: str
    member_subnet_id: str
    floating_network_id: str
    floating_subnet_id: str
    floating_subnet: str
    floating_subnet_tags: str
    lb_classes: types.MappingProxyType
    create_monitor: bool
    monitor_delay: int
    monitor_timeout: int
    monitor_max_retries: int
    monitor_max_retries_down: int
    manage_security_groups: bool
    node_security_group_ids: tuple
    internal_lb: bool
    cascade_delete: bool
    flavor_id: str
    availability_zone: str
    max_shared_lb: int
    enable_ingress_hostname: bool
    ingress_hostname_suffix: str
    default_tls_container_ref: str
    container_store: str
    node_selector: str
    serial_api_providers: tuple


def get_lb_classes():
    classes = {}
    for name in CONF.octavia_defaults.lb_classes:
        group = LB_CLASS_GROUP_PREFIX + name
        CONF.register_opts(lb_class_opts, group=group)
        values = CONF[group]
        classes[name] = LBClass(**{opt.dest: values[opt.dest]
                                   for opt in lb_class_opts})
    return types.MappingProxyType(classes)


def get_lb_options():
    opts = CONF.octavia_defaults
    return LoadBalancerOptions(
        cluster_name=opts.cluster_name,
        lb_provider=opts.lb_provider,
        lb_method=opts.lb_method,
        subnet_id=opts.subnet_id,
        network_id=opts.network_id,
        member_subnet_id=opts.member_subnet_id,
        floating_network_id=opts.floating_network_id,
        floating_subnet_id=opts.floating_subnet_id,
        floating_subnet=opts.floating_subnet,
        floating_subnet_tags=opts.floating_subnet_tags,
        lb_classes=get_lb_classes(),
        create_monitor=opts.create_monitor,
        monitor_delay=opts.monitor_delay,
        monitor_timeout=opts.monitor_timeout,
        monitor_max_retries=opts.monitor_max_retries,
        monitor_max_retries_down=opts.monitor_max_retries_down,
        manage_security_groups=opts.manage_security_groups,
        node_security_group_ids=tuple(opts.node_security_group_ids),
        internal_lb=opts.internal_lb,
        cascade_delete=opts.cascade_delete,
        flavor_id=opts.flavor_id,
        availability_zone=opts.availability_zone,
        max_shared_lb=opts.max_shared_lb,
        enable_ingress_hostname=opts.enable_ingress_hostname,
        ingress_hostname_suffix=opts.ingress_hostname_suffix,
        default_tls_container_ref=opts.default_tls_container_ref,
        container_store=opts.container_store,
        node_selector=opts.node_selector,
        serial_api_providers=tuple(opts.serial_api_providers),
    )


def init(args, **kwargs):
    version_octavia = version.version_info.version_string()
    CONF(args=args, project='kuryr-octavia', version=version_octavia,
         **kwargs)


def setup_logging():

    logging.setup(CONF, 'kuryr-octavia')
    logging.set_defaults(default_log_levels=logging.get_default_log_levels())
    version_octavia = version.version_info.version_string()
    LOG.info("Logging enabled!")
    LOG.info("%(prog)s version %(version)s",
             {'prog': sys.argv[0], 'version': version_octavia})
