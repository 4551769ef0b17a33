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

import ddt
from openstack.load_balancer.v2 import health_monitor as o_hm
from openstack.load_balancer.v2 import listener as o_lis
from openstack.load_balancer.v2 import member as o_mem
from openstack.load_balancer.v2 import pool as o_pool

from kuryr_octavia import constants as k_const
from kuryr_octavia.controller.drivers import lb_resources
from kuryr_octavia.controller.drivers import octavia as d_octavia
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import service_config
from kuryr_octavia.tests import base as test_base
from kuryr_octavia.tests import fake

OTHER_LB_NAME = 'kube_service_kubernetes_default_other'
PORT = {'name': 'http', 'protocol': 'TCP', 'port': 80, 'nodePort': 30080}


def _svc_conf(**attrs):
    values = {'lb_name': fake.LB_NAME,
              'capabilities': fake.get_capabilities(),
              'lb_member_subnet_id': fake.VIP_SUBNET_ID}
    values.update(attrs)
    return service_config.ServiceConfig(**values)


def _listener(**attrs):
    values = {'id': 'listener-1', 'protocol': 'TCP', 'protocol_port': 80,
              'tags': [fake.LB_NAME], 'connection_limit': -1,
              'allowed_cidrs': None}
    values.update(attrs)
    return o_lis.Listener(**values)


def _member(name='node-0', address='10.0.0.10', protocol_port=30080,
            **attrs):
    return o_mem.Member(id='member-%s' % name, name=name, address=address,
                        protocol_port=protocol_port, **attrs)


@ddt.ddt
class TestLBResourcesReconciler(test_base.TestCase):

    def setUp(self):
        super(TestLBResourcesReconciler, self).setUp()
        self.facade = mock.Mock(spec=d_octavia.OctaviaDriver)
        self.nodes = [fake.get_node('node-0', '10.0.0.10'),
                      fake.get_node('node-1', '10.0.0.11')]

    def _reconciler(self, is_owner=True, **attrs):
        return lb_resources.LBResourcesReconciler(
            self.facade, _svc_conf(**attrs), is_owner)

    @ddt.data(
        ({}, 'TCP', 'TCP'),
        ({'keep_client_ip': True}, 'HTTP', 'HTTP'),
        ({'tls_container_ref': 'ref'}, 'TERMINATED_HTTPS', 'HTTP'),
        ({'proxy_protocol': 'PROXY'}, 'TCP', 'PROXY'),
        ({'proxy_protocol': 'PROXYV2'}, 'TCP', 'PROXYV2'),
    )
    @ddt.unpack
    def test_protocols(self, attrs, listener_protocol, pool_protocol):
        reconciler = self._reconciler(**attrs)

        self.assertEqual(listener_protocol,
                         reconciler.listener_protocol(PORT))
        self.assertEqual(pool_protocol,
                         reconciler.pool_protocol(listener_protocol))

    def test_build_listener_attrs(self):
        reconciler = self._reconciler(
            conn_limit=100, keep_client_ip=True, allowed_cidrs=('10.0.0.0/8',),
            timeout_client_data=1, timeout_member_connect=2,
            timeout_member_data=3, timeout_tcp_inspect=4)

        attrs = reconciler.build_listener_attrs(PORT)

        self.assertEqual({
            'protocol': 'HTTP',
            'protocol_port': 80,
            'connection_limit': 100,
            'tags': [fake.LB_NAME],
            'timeout_client_data': 1,
            'timeout_member_connect': 2,
            'timeout_member_data': 3,
            'timeout_tcp_inspect': 4,
            'insert_headers': {'X-Forwarded-For': 'true'},
            'allowed_cidrs': ['10.0.0.0/8'],
        }, attrs)

    def test_build_listener_attrs_old_octavia(self):
        reconciler = self._reconciler(
            capabilities=fake.get_capabilities(version=(2, 0)))

        attrs = reconciler.build_listener_attrs(PORT)

        self.assertEqual({'protocol': 'TCP', 'protocol_port': 80,
                          'connection_limit': -1}, attrs)

    def test_build_pool_attrs_session_persistence(self):
        reconciler = self._reconciler(
            session_persistence=k_const.SESSION_PERSISTENCE_SOURCE_IP)

        self.assertEqual({'protocol': 'TCP', 'lb_algorithm': 'ROUND_ROBIN',
                          'session_persistence': {'type': 'SOURCE_IP'}},
                         reconciler.build_pool_attrs('TCP'))

    @ddt.data(
        ({}, PORT, 'TCP'),
        ({}, dict(PORT, protocol='UDP'), 'UDP-CONNECT'),
        ({'health_check_node_port': 32000}, PORT, 'HTTP'),
        ({'health_check_node_port': 32000}, dict(PORT, protocol='UDP'),
         'HTTP'),
        ({'health_check_node_port': 32000,
          'capabilities': fake.get_capabilities(version=(2, 13))},
         dict(PORT, protocol='UDP'), 'UDP-CONNECT'),
        ({'health_check_node_port': 32000,
          'capabilities': fake.get_capabilities(provider='ovn')},
         PORT, 'TCP'),
    )
    @ddt.unpack
    def test_build_monitor_attrs_type(self, attrs, port, monitor_type):
        reconciler = self._reconciler(**attrs)

        self.assertEqual(monitor_type,
                         reconciler.build_monitor_attrs(port)['type'])

    def test_build_monitor_attrs_http(self):
        reconciler = self._reconciler(health_check_node_port=32000,
                                      monitor_delay=10)

        attrs = reconciler.build_monitor_attrs(PORT)

        self.assertEqual({'type': 'HTTP', 'delay': 10, 'timeout': 3,
                          'max_retries': 1, 'max_retries_down': 3,
                          'http_method': 'GET', 'url_path': '/healthz',
                          'expected_codes': '200'}, attrs)

    def test_build_members(self):
        nodes = self.nodes + [fake.get_node('node-2', addr_type='Hostname')]
        reconciler = self._reconciler()

        members, keys = reconciler.build_members(PORT, nodes)

        self.assertEqual([
            {'name': 'node-0', 'address': '10.0.0.10', 'protocol_port': 30080,
             'subnet_id': fake.VIP_SUBNET_ID},
            {'name': 'node-1', 'address': '10.0.0.11', 'protocol_port': 30080,
             'subnet_id': fake.VIP_SUBNET_ID},
        ], members)
        self.assertEqual({'node-0-10.0.0.10-30080-0',
                          'node-1-10.0.0.11-30080-0'}, keys)

    def test_build_members_monitor_port(self):
        reconciler = self._reconciler(health_check_node_port=32000)

        members, keys = reconciler.build_members(PORT, self.nodes[:1])

        self.assertEqual(32000, members[0]['monitor_port'])
        self.assertEqual({'node-0-10.0.0.10-30080-32000'}, keys)

    def test_build_create_listeners(self):
        service = fake.get_service(ports=[
            PORT, {'name': 'dns', 'protocol': 'UDP', 'port': 53,
                   'nodePort': 30053}])
        reconciler = self._reconciler(enable_monitor=True)

        listeners = reconciler.build_create_listeners(service, self.nodes)

        self.assertEqual(2, len(listeners))
        self.assertEqual('listener_1_' + fake.LB_NAME, listeners[1]['name'])
        pool = listeners[1]['default_pool']
        self.assertEqual('pool_1_' + fake.LB_NAME, pool['name'])
        self.assertEqual('UDP', pool['protocol'])
        self.assertEqual(2, len(pool['members']))
        self.assertEqual('UDP-CONNECT', pool['healthmonitor']['type'])
        self.assertEqual('monitor_1_' + fake.LB_NAME,
                         pool['healthmonitor']['name'])

    def test_build_create_listeners_without_monitor(self):
        reconciler = self._reconciler()

        listeners = reconciler.build_create_listeners(fake.get_service(),
                                                      self.nodes)

        self.assertNotIn('healthmonitor', listeners[0]['default_pool'])

    def test_check_listener_ports_conflict(self):
        listener = _listener(tags=[OTHER_LB_NAME])
        listener_map = lb_resources.get_listener_map([listener])

        self.assertRaises(k_exc.Conflict,
                          self._reconciler().check_listener_ports,
                          fake.get_service(), listener_map)

    def test_check_listener_ports_untagged(self):
        listener_map = lb_resources.get_listener_map([_listener(tags=[])])

        self._reconciler().check_listener_ports(fake.get_service(),
                                                listener_map)
        self.assertRaises(k_exc.Conflict,
                          self._reconciler(False).check_listener_ports,
                          fake.get_service(), listener_map)

    def test_ensure_listener_create(self):
        listener = _listener()
        self.facade.create_listener.return_value = listener
        reconciler = self._reconciler()

        ret = reconciler.ensure_listener(fake.LB_ID, 0, PORT, {})

        self.assertEqual(listener, ret)
        self.facade.create_listener.assert_called_once_with(
            fake.LB_ID, protocol='TCP', protocol_port=80, connection_limit=-1,
            tags=[fake.LB_NAME], name='listener_0_' + fake.LB_NAME)

    def test_ensure_listener_up_to_date(self):
        listener = _listener()
        reconciler = self._reconciler()

        reconciler.ensure_listener(fake.LB_ID, 0, PORT,
                                   lb_resources.get_listener_map([listener]))

        self.facade.create_listener.assert_not_called()
        self.facade.update_listener.assert_not_called()

    def test_ensure_listener_update(self):
        listener = _listener(tags=['user'], connection_limit=10,
                             insert_headers={'X-Forwarded-For': 'true'},
                             allowed_cidrs=['0.0.0.0/0'])
        reconciler = self._reconciler(allowed_cidrs=('10.0.0.0/8',))

        reconciler.ensure_listener(fake.LB_ID, 0, PORT,
                                   lb_resources.get_listener_map([listener]))

        self.facade.update_listener.assert_called_once_with(
            fake.LB_ID, 'listener-1', tags=['user', fake.LB_NAME],
            connection_limit=-1, insert_headers={},
            allowed_cidrs=['10.0.0.0/8'])

    def test_ensure_listener_update_timeouts(self):
        listener = _listener(timeout_client_data=50000,
                             timeout_member_connect=5000,
                             timeout_member_data=50000,
                             timeout_tcp_inspect=0)
        reconciler = self._reconciler(
            timeout_client_data=1000, timeout_member_connect=5000,
            timeout_member_data=50000, timeout_tcp_inspect=0)

        reconciler.ensure_listener(fake.LB_ID, 0, PORT,
                                   lb_resources.get_listener_map([listener]))

        self.facade.update_listener.assert_called_once_with(
            fake.LB_ID, 'listener-1', timeout_client_data=1000)

    def test_delete_unclaimed_listeners(self):
        claimed = _listener(id='claimed')
        stale = _listener(id='stale', protocol_port=81)
        foreign = _listener(id='foreign', protocol_port=82,
                            tags=[OTHER_LB_NAME])
        pool = o_pool.Pool(id='pool-stale', health_monitor_id='hm-stale')
        self.facade.get_pool_by_listener.return_value = pool
        reconciler = self._reconciler()
        reconciler._reconciled.add('claimed')

        reconciler.delete_unclaimed_listeners(
            fake.LB_ID, lb_resources.get_listener_map([claimed, stale,
                                                       foreign]))

        self.facade.get_pool_by_listener.assert_called_once_with(fake.LB_ID,
                                                                 'stale')
        self.facade.delete_health_monitor.assert_called_once_with(
            fake.LB_ID, 'hm-stale')
        self.facade.delete_pool.assert_called_once_with(fake.LB_ID,
                                                        'pool-stale')
        self.facade.delete_listener.assert_called_once_with(fake.LB_ID,
                                                            'stale')

    def test_delete_service_listeners(self):
        ours = _listener(id='ours')
        theirs = _listener(id='theirs', protocol_port=443,
                           tags=[OTHER_LB_NAME])
        self.facade.listeners.return_value = [ours, theirs]
        self.facade.get_pool_by_listener.return_value = None
        service = fake.get_service(ports=[
            PORT, {'protocol': 'TCP', 'port': 443, 'nodePort': 30443}])

        self._reconciler(False).delete_service_listeners(fake.LB_ID, service)

        self.facade.delete_listener.assert_called_once_with(fake.LB_ID,
                                                            'ours')

    def test_delete_all(self):
        self.facade.pools.return_value = [
            o_pool.Pool(id='pool-1', health_monitor_id='hm-1'),
            o_pool.Pool(id='pool-2', health_monitor_id=None)]
        self.facade.listeners.return_value = [_listener()]
        self.facade.get_pool_by_listener.return_value = o_pool.Pool(
            id='pool-1', health_monitor_id=None)

        self._reconciler().delete_all(fake.LB_ID)

        self.facade.delete_health_monitor.assert_called_once_with(
            fake.LB_ID, 'hm-1')
        self.facade.delete_pool.assert_called_once_with(fake.LB_ID, 'pool-1')
        self.facade.delete_listener.assert_called_once_with(fake.LB_ID,
                                                            'listener-1')

    def test_ensure_pool_create(self):
        pool = o_pool.Pool(id='pool-1')
        self.facade.get_pool_by_listener.return_value = None
        self.facade.create_pool.return_value = pool
        self.facade.members.return_value = []
        reconciler = self._reconciler()

        ret = reconciler.ensure_pool(fake.LB_ID, 0, _listener(), PORT,
                                     self.nodes)

        self.assertEqual(pool, ret)
        self.facade.create_pool.assert_called_once_with(
            fake.LB_ID, protocol='TCP', lb_algorithm='ROUND_ROBIN',
            listener_id='listener-1', name='pool_0_' + fake.LB_NAME)
        self.facade.batch_update_members.assert_called_once_with(
            fake.LB_ID, 'pool-1', mock.ANY)

    def test_ensure_pool_protocol_changed(self):
        self.facade.get_pool_by_listener.return_value = o_pool.Pool(
            id='old', protocol='TCP')
        self.facade.create_pool.return_value = o_pool.Pool(id='new')
        self.facade.members.return_value = []
        reconciler = self._reconciler(proxy_protocol='PROXY')

        reconciler.ensure_pool(fake.LB_ID, 0, _listener(), PORT, self.nodes)

        self.facade.delete_pool.assert_called_once_with(fake.LB_ID, 'old')
        self.facade.create_pool.assert_called_once_with(
            fake.LB_ID, protocol='PROXY', lb_algorithm='ROUND_ROBIN',
            listener_id='listener-1', name='pool_0_' + fake.LB_NAME)

    def test_ensure_pool_update(self):
        self.facade.get_pool_by_listener.return_value = o_pool.Pool(
            id='pool-1', protocol='TCP', lb_algorithm='LEAST_CONNECTIONS',
            session_persistence={'type': 'SOURCE_IP'})
        self.facade.members.return_value = [
            _member('node-0', '10.0.0.10'), _member('node-1', '10.0.0.11')]
        reconciler = self._reconciler()

        reconciler.ensure_pool(fake.LB_ID, 0, _listener(), PORT, self.nodes)

        self.facade.update_pool.assert_called_once_with(
            fake.LB_ID, 'pool-1', lb_algorithm='ROUND_ROBIN',
            session_persistence=None)
        self.facade.batch_update_members.assert_not_called()

    def test_ensure_members_batch(self):
        pool = o_pool.Pool(id='pool-1')
        self.facade.members.return_value = [_member('gone', '10.0.0.99')]
        reconciler = self._reconciler()

        reconciler.ensure_members(fake.LB_ID, pool, PORT, self.nodes)

        members, _ = reconciler.build_members(PORT, self.nodes)
        self.facade.batch_update_members.assert_called_once_with(
            fake.LB_ID, 'pool-1', members)

    def test_ensure_members_monitor_port_up_to_date(self):
        pool = o_pool.Pool(id='pool-1')
        self.facade.members.return_value = [
            _member('node-0', '10.0.0.10', monitor_port=32000)]
        reconciler = self._reconciler(health_check_node_port=32000)

        reconciler.ensure_members(fake.LB_ID, pool, PORT, self.nodes[:1])

        self.facade.batch_update_members.assert_not_called()

    def test_ensure_members_serial(self):
        pool = o_pool.Pool(id='pool-1')
        self.facade.members.return_value = [
            _member('node-0', '10.0.0.10'), _member('gone', '10.0.0.99')]
        reconciler = self._reconciler(capabilities=fake.get_capabilities(
            provider='ovn', serial_api_providers=('ovn',)))

        reconciler.ensure_members(fake.LB_ID, pool, PORT, self.nodes)

        self.facade.batch_update_members.assert_not_called()
        self.facade.delete_member.assert_called_once_with(
            fake.LB_ID, 'pool-1', 'member-gone')
        self.facade.create_member.assert_called_once_with(
            fake.LB_ID, 'pool-1', name='node-1', address='10.0.0.11',
            protocol_port=30080, subnet_id=fake.VIP_SUBNET_ID)

    def test_ensure_monitor_create(self):
        pool = o_pool.Pool(id='pool-1', health_monitor_id=None)
        reconciler = self._reconciler(enable_monitor=True)

        reconciler.ensure_monitor(fake.LB_ID, 0, pool, PORT)

        self.facade.create_health_monitor.assert_called_once_with(
            fake.LB_ID, type='TCP', delay=5, timeout=3, max_retries=1,
            max_retries_down=3, name='monitor_0_' + fake.LB_NAME,
            pool_id='pool-1')

    def test_ensure_monitor_disabled(self):
        pool = o_pool.Pool(id='pool-1', health_monitor_id='hm-1')
        self.facade.get_health_monitor.return_value = o_hm.HealthMonitor(
            id='hm-1', type='TCP')

        ret = self._reconciler().ensure_monitor(fake.LB_ID, 0, pool, PORT)

        self.assertIsNone(ret)
        self.facade.delete_health_monitor.assert_called_once_with(
            fake.LB_ID, 'hm-1')

    def test_ensure_monitor_type_changed(self):
        pool = o_pool.Pool(id='pool-1', health_monitor_id='hm-1')
        self.facade.get_health_monitor.return_value = o_hm.HealthMonitor(
            id='hm-1', type='TCP')
        reconciler = self._reconciler(enable_monitor=True,
                                      health_check_node_port=32000)

        reconciler.ensure_monitor(fake.LB_ID, 0, pool, PORT)

        self.facade.delete_health_monitor.assert_called_once_with(
            fake.LB_ID, 'hm-1')
        self.assertEqual(
            'HTTP',
            self.facade.create_health_monitor.call_args[1]['type'])

    def test_ensure_monitor_update(self):
        pool = o_pool.Pool(id='pool-1', health_monitor_id='hm-1')
        self.facade.get_health_monitor.return_value = o_hm.HealthMonitor(
            id='hm-1', type='TCP', delay=5, timeout=3, max_retries=1,
            max_retries_down=3, name='monitor_0_' + fake.LB_NAME)
        reconciler = self._reconciler(enable_monitor=True, monitor_delay=20)

        reconciler.ensure_monitor(fake.LB_ID, 0, pool, PORT)

        self.facade.update_health_monitor.assert_called_once_with(
            fake.LB_ID, 'hm-1', delay=20)

    def test_reconcile(self):
        listener = _listener()
        pool = o_pool.Pool(id='pool-1', protocol='TCP',
                           lb_algorithm='ROUND_ROBIN', health_monitor_id=None)
        self.facade.listeners.return_value = [listener]
        self.facade.get_pool_by_listener.return_value = pool
        self.facade.members.return_value = [
            _member('node-0', '10.0.0.10'), _member('node-1', '10.0.0.11')]

        self._reconciler().reconcile(fake.LB_ID, fake.get_service(),
                                     self.nodes)

        self.facade.create_listener.assert_not_called()
        self.facade.update_listener.assert_not_called()
        self.facade.create_pool.assert_not_called()
        self.facade.update_pool.assert_not_called()
        self.facade.batch_update_members.assert_not_called()
        self.facade.delete_listener.assert_not_called()

    def test_update_pools_missing_listener(self):
        self.facade.listeners.return_value = []

        self.assertRaises(k_exc.LoadBalancerError,
                          self._reconciler().update_pools, fake.LB_ID,
                          fake.get_service(), self.nodes)
