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

from unittest import mock

from openstack import exceptions as os_exc
from openstack.compute.v2 import server as os_server
from openstack.network.v2 import port as os_port
from openstack.network.v2 import security_group as os_sg
from openstack.network.v2 import security_group_rule as os_sgr
from openstack.network.v2 import subnet as os_subnet

from kuryr_octavia.controller.drivers import octavia as d_octavia
from kuryr_octavia.controller.drivers import security_groups
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia.tests import base as test_base
from kuryr_octavia.tests import fake
from kuryr_octavia.tests.unit import kuryr_fixtures as k_fix

SG_ID = '6a1b8d3e-7f35-4bd1-8b8e-0d5e0f2e8a11'
NODE_SG_ID = 'f1c2d3e4-0000-4bd1-8b8e-0d5e0f2e8a22'
SG_NAME = 'lb-sg-%s-default-test' % fake.SERVICE_UID


class TestSecurityGroupReconciler(test_base.TestCase):

    def setUp(self):
        super(TestSecurityGroupReconciler, self).setUp()
        self.facade = mock.Mock(spec=d_octavia.OctaviaDriver)
        self.sg = os_sg.SecurityGroup(id=SG_ID, name=SG_NAME)
        self.facade.find_security_group_by_name.return_value = self.sg
        self.facade.get_subnet.return_value = os_subnet.Subnet(
            id=fake.VIP_SUBNET_ID, cidr='10.0.0.0/24')
        self.facade.security_group_rules.return_value = []
        self.facade.find_server.return_value = os_server.Server(id='vm-0')
        self.facade.ports.return_value = []

    def test_ensure_rule_exists(self):
        self.facade.security_group_rules.return_value = [
            os_sgr.SecurityGroupRule(id='rule')]
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        self.assertFalse(reconciler.ensure_rule(SG_ID, 'TCP', 'IPv4', 30080,
                                                '10.0.0.0/24'))
        self.facade.create_security_group_rule.assert_not_called()

    def test_ensure_rule_create(self):
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        self.assertTrue(reconciler.ensure_rule(SG_ID, 'UDP', 'IPv6', 30053,
                                               remote_group_id='other'))
        self.facade.create_security_group_rule.assert_called_once_with(
            ethertype='IPv6', security_group_id=SG_ID, direction='ingress',
            protocol='udp', port_range_min=30053, port_range_max=30053,
            remote_group_id='other')

    def test_ensure(self):
        port = os_port.Port(id='port-0', security_group_ids=['default'],
                            tags=['user'])
        self.facade.ports.return_value = [port]
        service = fake.get_service(healthCheckNodePort=32000)
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        ret = reconciler.ensure(service, [fake.get_node()],
                                fake.VIP_SUBNET_ID, 'kubernetes')

        self.assertEqual(self.sg, ret)
        self.facade.create_security_group.assert_not_called()
        self.facade.create_security_group_rule.assert_has_calls([
            mock.call(ethertype='IPv4', security_group_id=SG_ID,
                      direction='ingress', protocol='tcp',
                      port_range_min=32000, port_range_max=32000,
                      remote_ip_prefix='10.0.0.0/24'),
            mock.call(ethertype='IPv4', security_group_id=SG_ID,
                      direction='ingress', protocol='tcp',
                      port_range_min=30080, port_range_max=30080,
                      remote_ip_prefix='10.0.0.0/24'),
        ])
        self.facade.find_server.assert_called_once_with('node-0')
        self.facade.ports.assert_called_once_with(device_id='vm-0')
        self.facade.update_port_security_groups.assert_called_once_with(
            'port-0', ['default', SG_ID])
        self.facade.set_port_tags.assert_called_once_with(port,
                                                          ['user', SG_ID])

    def test_ensure_creates_group(self):
        self.facade.find_security_group_by_name.return_value = None
        self.facade.create_security_group.return_value = self.sg
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        reconciler.ensure(fake.get_service(), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

        self.facade.create_security_group.assert_called_once_with(
            SG_NAME, 'Security Group for default/test Service LoadBalancer '
            'in cluster kubernetes')

    def test_ensure_node_security_groups(self):
        reconciler = security_groups.SecurityGroupReconciler(
            self.facade, [NODE_SG_ID])

        reconciler.ensure(fake.get_service(), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

        for ethertype in ('IPv4', 'IPv6'):
            self.facade.create_security_group_rule.assert_any_call(
                ethertype=ethertype, security_group_id=NODE_SG_ID,
                direction='ingress', protocol='tcp', port_range_min=30080,
                port_range_max=30080, remote_group_id=SG_ID)

    def test_ensure_port_already_attached(self):
        self.facade.ports.return_value = [
            os_port.Port(id='port-0', security_group_ids=[SG_ID])]
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        reconciler.ensure(fake.get_service(), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

        self.facade.update_port_security_groups.assert_not_called()
        self.facade.set_port_tags.assert_not_called()

    def test_ensure_no_ports(self):
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        self.assertRaises(k_exc.InvalidConfiguration, reconciler.ensure,
                          fake.get_service(ports=[]), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

    def test_ensure_missing_subnet(self):
        self.facade.get_subnet.return_value = None
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        self.assertRaises(k_exc.ResourceNotFound, reconciler.ensure,
                          fake.get_service(), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

    def test_ensure_missing_server(self):
        self.facade.find_server.return_value = None
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        self.assertRaises(k_exc.ResourceNotFound, reconciler.ensure,
                          fake.get_service(), [fake.get_node()],
                          fake.VIP_SUBNET_ID, 'kubernetes')

    def test_delete(self):
        port = os_port.Port(id='port-0', security_group_ids=['default', SG_ID],
                            tags=['user', SG_ID])
        self.facade.ports.return_value = [port]
        self.facade.security_group_rules.side_effect = [
            [os_sgr.SecurityGroupRule(id='node-rule')],
            [os_sgr.SecurityGroupRule(id='rule')]]
        reconciler = security_groups.SecurityGroupReconciler(self.facade,
                                                             [NODE_SG_ID])

        reconciler.delete(fake.get_service())

        self.facade.ports.assert_called_once_with(any_tags=SG_ID)
        self.facade.update_port_security_groups.assert_called_once_with(
            'port-0', ['default'])
        self.facade.set_port_tags.assert_called_once_with(port, ['user'])
        self.facade.security_group_rules.assert_has_calls([
            mock.call(security_group_id=NODE_SG_ID, remote_group_id=SG_ID),
            mock.call(security_group_id=SG_ID)])
        self.facade.delete_security_group_rule.assert_has_calls([
            mock.call('node-rule'), mock.call('rule')])
        self.facade.delete_security_group.assert_called_once_with(SG_ID)

    def test_delete_port_gone(self):
        port = os_port.Port(id='port-0', security_group_ids=[SG_ID],
                            tags=[SG_ID])
        self.facade.ports.return_value = [port]
        self.facade.update_port_security_groups.return_value = False
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        reconciler.delete(fake.get_service())

        self.facade.set_port_tags.assert_not_called()
        self.facade.delete_security_group.assert_called_once_with(SG_ID)

    def test_delete_port_gone_with_driver(self):
        os_net = self.useFixture(k_fix.MockNetworkClient()).client
        os_net.security_groups.return_value = iter([self.sg])
        os_net.ports.return_value = iter([
            os_port.Port(id='port-0', security_group_ids=[SG_ID],
                         tags=[SG_ID])])
        os_net.update_port.side_effect = os_exc.NotFoundException
        os_net.security_group_rules.return_value = iter([])
        reconciler = security_groups.SecurityGroupReconciler(
            d_octavia.OctaviaDriver(timeout=10))

        reconciler.delete(fake.get_service())

        os_net.set_tags.assert_not_called()
        os_net.delete_security_group.assert_called_once_with(SG_ID)

    def test_delete_missing(self):
        self.facade.find_security_group_by_name.return_value = None
        reconciler = security_groups.SecurityGroupReconciler(self.facade)

        reconciler.delete(fake.get_service())

        self.facade.delete_security_group.assert_not_called()
