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

from oslo_log import log as logging

from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)


def _rule_protocol(protocol):
    return (protocol or k_const.LB_PROTOCOL_TCP).lower()


class SecurityGroupReconciler(object):
    """Security group letting the load balancer reach the node ports.

    The group is named after the Service UID and attached to every port of
    the node servers, each of those ports is tagged with the group ID so it
    can be found again on removal.
    """

    def __init__(self, facade, node_security_group_ids=()):
        self._facade = facade
        self._node_security_group_ids = tuple(node_security_group_ids)

    def _get_or_create_group(self, service, cluster_name):
        name = utils.get_security_group_name(service)
        sg = self._facade.find_security_group_by_name(name)
        if sg is not None:
            return sg
        description = k_const.SG_DESCRIPTION % {
            'service': utils.get_res_unique_name(service),
            'cluster': cluster_name}
        return self._facade.create_security_group(name, description)

    def ensure_rule(self, sg_id, protocol, ethertype, port,
                    remote_ip_prefix=None, remote_group_id=None):
        """Creates the ingress rule unless an equal one already exists."""
        rule = {
            'security_group_id': sg_id,
            'direction': k_const.SG_RULE_DIRECTION_INGRESS,
            'protocol': _rule_protocol(protocol),
            'port_range_min': port,
            'port_range_max': port,
        }
        if remote_ip_prefix:
            rule['remote_ip_prefix'] = remote_ip_prefix
        if remote_group_id:
            rule['remote_group_id'] = remote_group_id
        if self._facade.security_group_rules(ethertype=ethertype, **rule):
            return False
        self._facade.create_security_group_rule(ethertype=ethertype, **rule)
        return True

    def _apply_to_nodes(self, nodes, sg_id):
        for node in nodes:
            node_name = node['metadata']['name']
            server = self._facade.find_server(node_name)
            if server is None:
                raise k_exc.ResourceNotFound('server of node %s' % node_name)
            for port in self._facade.ports(device_id=server.id):
                security_groups = list(port.security_group_ids or [])
                if sg_id in security_groups:
                    continue
                LOG.debug('Adding security group %(sg)s to port %(port)s of '
                          'node %(node)s', {'sg': sg_id, 'port': port.id,
                                            'node': node_name})
                if not self._facade.update_port_security_groups(
                        port.id, security_groups + [sg_id]):
                    continue
                # The tag allows to find the port again when the group is
                # removed.
                self._facade.set_port_tags(port, list(port.tags or []) +
                                           [sg_id])

    def ensure(self, service, nodes, member_subnet_id, cluster_name):
        """Makes sure the Service security group and its rules exist."""
        ports = utils.get_service_ports(service)
        if not ports:
            raise k_exc.InvalidConfiguration(
                'No ports provided for LoadBalancer Service %s' %
                utils.get_res_unique_name(service))

        sg = self._get_or_create_group(service, cluster_name)
        subnet = self._facade.get_subnet(member_subnet_id)
        if subnet is None:
            raise k_exc.ResourceNotFound('subnet %s' % member_subnet_id)
        ethertype = utils.get_ethertype(subnet.cidr)

        health_check_node_port = service['spec'].get('healthCheckNodePort')
        if health_check_node_port:
            self.ensure_rule(sg.id, k_const.LB_PROTOCOL_TCP, ethertype,
                             health_check_node_port,
                             remote_ip_prefix=subnet.cidr)

        for port in ports:
            node_port = port.get('nodePort')
            if not node_port:
                continue
            self.ensure_rule(sg.id, port.get('protocol'), ethertype,
                             node_port, remote_ip_prefix=subnet.cidr)
            for node_sg_id in self._node_security_group_ids:
                for node_ethertype in (k_const.SG_ETHERTYPE_IPV4,
                                       k_const.SG_ETHERTYPE_IPV6):
                    self.ensure_rule(node_sg_id, port.get('protocol'),
                                     node_ethertype, node_port,
                                     remote_group_id=sg.id)

        self._apply_to_nodes(nodes, sg.id)
        return sg

    def delete(self, service):
        """Detaches and deletes the Service security group.

        A group that is already gone is not an error.
        """
        name = utils.get_security_group_name(service)
        sg = self._facade.find_security_group_by_name(name)
        if sg is None:
            LOG.debug('Security group %s already deleted', name)
            return

        for port in self._facade.ports(any_tags=sg.id):
            security_groups = [sg_id for sg_id in port.security_group_ids or []
                               if sg_id != sg.id]
            if not self._facade.update_port_security_groups(port.id,
                                                            security_groups):
                continue
            self._facade.set_port_tags(port, [tag for tag in port.tags or []
                                              if tag != sg.id])

        for node_sg_id in self._node_security_group_ids:
            for rule in self._facade.security_group_rules(
                    security_group_id=node_sg_id, remote_group_id=sg.id):
                self._facade.delete_security_group_rule(rule.id)

        for rule in self._facade.security_group_rules(
                security_group_id=sg.id):
            self._facade.delete_security_group_rule(rule.id)
        self._facade.delete_security_group(sg.id)
