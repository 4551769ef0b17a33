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

"""Listeners, pools, members and health monitors of a Service.

Every Service port maps to one listener keyed by (protocol, port), with a
single pool holding one member per node and an optional health monitor.
"""

from oslo_log import log as logging

from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)


def _member_key(name, address, protocol_port, monitor_port):
    return '%s-%s-%s-%s' % (name, address, protocol_port, monitor_port or 0)


def get_listener_map(listeners):
    return {(listener.protocol, listener.protocol_port): listener
            for listener in listeners}


class LBResourcesReconciler(object):
    """Converges the load balancer graph of one Service.

    Each call only issues the create, update or delete requests needed to
    reach the desired state, the facade waits for the load balancer to be
    ACTIVE again after each of them.
    """

    def __init__(self, facade, svc_conf, is_owner):
        self._facade = facade
        self._svc_conf = svc_conf
        self._is_owner = is_owner
        self._reconciled = set()

    @property
    def _lb_name(self):
        return self._svc_conf.lb_name

    def _is_ours(self, listener):
        tags = listener.tags or []
        return self._lb_name in tags or (not tags and self._is_owner)

    def listener_protocol(self, port):
        if self._svc_conf.tls_container_ref:
            return k_const.LB_PROTOCOL_TERMINATED_HTTPS
        if self._svc_conf.keep_client_ip:
            return k_const.LB_PROTOCOL_HTTP
        return port.get('protocol', k_const.LB_PROTOCOL_TCP)

    def pool_protocol(self, listener_protocol):
        if self._svc_conf.proxy_protocol:
            return self._svc_conf.proxy_protocol
        if self._svc_conf.keep_client_ip or self._svc_conf.tls_container_ref:
            return k_const.LB_PROTOCOL_HTTP
        return listener_protocol

    def _listener_key(self, port):
        return self.listener_protocol(port), port['port']

    def _use_http_monitor(self, port):
        if self._svc_conf.health_check_node_port <= 0:
            return False
        if self._svc_conf.provider == k_const.OVN_PROVIDER:
            # ovn-octavia-provider has no HTTP monitors, the NodePort is
            # checked instead.
            return False
        if port.get('protocol') == k_const.LB_PROTOCOL_UDP:
            return self._svc_conf.capabilities.http_monitors_on_udp
        return True

    # Request bodies

    def build_listener_attrs(self, port):
        svc_conf = self._svc_conf
        attrs = {
            'protocol': self.listener_protocol(port),
            'protocol_port': port['port'],
            'connection_limit': svc_conf.conn_limit,
        }
        if svc_conf.supports_tags:
            attrs['tags'] = [self._lb_name]
        if svc_conf.timeout_client_data is not None:
            attrs['timeout_client_data'] = svc_conf.timeout_client_data
            attrs['timeout_member_connect'] = svc_conf.timeout_member_connect
            attrs['timeout_member_data'] = svc_conf.timeout_member_data
            attrs['timeout_tcp_inspect'] = svc_conf.timeout_tcp_inspect
        if svc_conf.keep_client_ip:
            attrs['insert_headers'] = {k_const.X_FORWARDED_FOR_HEADER: 'true'}
        if svc_conf.tls_container_ref:
            attrs['default_tls_container_ref'] = svc_conf.tls_container_ref
        if svc_conf.allowed_cidrs:
            attrs['allowed_cidrs'] = list(svc_conf.allowed_cidrs)
        return attrs

    def build_pool_attrs(self, listener_protocol):
        attrs = {
            'protocol': self.pool_protocol(listener_protocol),
            'lb_algorithm': self._svc_conf.lb_method,
        }
        if self._svc_conf.session_persistence:
            attrs['session_persistence'] = {
                'type': self._svc_conf.session_persistence}
        return attrs

    def build_monitor_attrs(self, port):
        svc_conf = self._svc_conf
        attrs = {
            'type': port.get('protocol', k_const.LB_PROTOCOL_TCP),
            'delay': svc_conf.monitor_delay,
            'timeout': svc_conf.monitor_timeout,
            'max_retries': svc_conf.monitor_max_retries,
            'max_retries_down': svc_conf.monitor_max_retries_down,
        }
        if attrs['type'] == k_const.LB_PROTOCOL_UDP:
            attrs['type'] = k_const.HEALTH_MONITOR_UDP_CONNECT
        if self._use_http_monitor(port):
            attrs.update({
                'type': k_const.HEALTH_MONITOR_HTTP,
                'http_method': k_const.HEALTH_MONITOR_HTTP_METHOD,
                'url_path': k_const.HEALTH_MONITOR_URL_PATH,
                'expected_codes': k_const.HEALTH_MONITOR_EXPECTED_CODES,
            })
        return attrs

    def build_members(self, port, nodes):
        """Returns the member bodies of a port and their identity keys."""
        svc_conf = self._svc_conf
        monitor_port = None
        if self._use_http_monitor(port):
            monitor_port = svc_conf.health_check_node_port
        members = []
        keys = set()
        for node in nodes:
            node_name = node['metadata']['name']
            address = utils.get_node_address(node,
                                             svc_conf.preferred_ip_family)
            if not address:
                LOG.warning('Failed to get the address of node %s for '
                            'creating member', node_name)
                continue
            member = {
                'name': node_name,
                'address': address,
                'protocol_port': port['nodePort'],
            }
            if svc_conf.lb_member_subnet_id:
                member['subnet_id'] = svc_conf.lb_member_subnet_id
            if monitor_port:
                member['monitor_port'] = monitor_port
            key = _member_key(node_name, address, port['nodePort'],
                              monitor_port)
            if key in keys:
                continue
            keys.add(key)
            members.append(member)
        return members, keys

    def build_create_listeners(self, service, nodes):
        """Returns the listeners of a fully populated load balancer."""
        listeners = []
        for index, port in enumerate(utils.get_service_ports(service)):
            listener = self.build_listener_attrs(port)
            listener['name'] = utils.get_listener_name(index, self._lb_name)
            pool = self.build_pool_attrs(listener['protocol'])
            pool['name'] = utils.get_pool_name(index, self._lb_name)
            pool['members'], _ = self.build_members(port, nodes)
            if self._svc_conf.enable_monitor:
                monitor = self.build_monitor_attrs(port)
                monitor['name'] = utils.get_monitor_name(index,
                                                         self._lb_name)
                pool['healthmonitor'] = monitor
            listener['default_pool'] = pool
            LOG.debug('Load balancer %(lb)s: adding pool using protocol '
                      '%(protocol)s with %(count)d members',
                      {'lb': self._lb_name, 'protocol': pool['protocol'],
                       'count': len(pool['members'])})
            listeners.append(listener)
        return listeners

    # Listeners

    def get_listener_map(self, lb_id):
        return get_listener_map(self._facade.listeners(lb_id))

    def check_listener_ports(self, service, listener_map):
        for port in utils.get_service_ports(service):
            listener = listener_map.get(self._listener_key(port))
            if listener is not None and not self._is_ours(listener):
                raise k_exc.Conflict('the listener port %s already exists' %
                                     port['port'])

    def _get_listener_changes(self, listener):
        svc_conf = self._svc_conf
        changes = {}
        tags = listener.tags or []
        if svc_conf.supports_tags and self._lb_name not in tags:
            changes['tags'] = list(tags) + [self._lb_name]
        if listener.connection_limit != svc_conf.conn_limit:
            changes['connection_limit'] = svc_conf.conn_limit

        headers = dict(listener.insert_headers or {})
        keeps_client_ip = (
            headers.get(k_const.X_FORWARDED_FOR_HEADER) == 'true')
        if keeps_client_ip != svc_conf.keep_client_ip:
            if svc_conf.keep_client_ip:
                headers[k_const.X_FORWARDED_FOR_HEADER] = 'true'
            else:
                headers.pop(k_const.X_FORWARDED_FOR_HEADER, None)
            changes['insert_headers'] = headers

        if ((listener.default_tls_container_ref or '') !=
                svc_conf.tls_container_ref):
            changes['default_tls_container_ref'] = (
                svc_conf.tls_container_ref or None)

        if svc_conf.timeout_client_data is not None:
            for attr in ('timeout_client_data', 'timeout_member_connect',
                         'timeout_member_data', 'timeout_tcp_inspect'):
                value = getattr(svc_conf, attr)
                if getattr(listener, attr) != value:
                    changes[attr] = value

        if svc_conf.allowed_cidrs is not None:
            if (sorted(listener.allowed_cidrs or []) !=
                    sorted(svc_conf.allowed_cidrs)):
                changes['allowed_cidrs'] = list(svc_conf.allowed_cidrs)
        return changes

    def ensure_listener(self, lb_id, index, port, listener_map):
        listener = listener_map.get(self._listener_key(port))
        if listener is None:
            attrs = self.build_listener_attrs(port)
            attrs['name'] = utils.get_listener_name(index, self._lb_name)
            LOG.debug('Creating listener for port %(port)s using protocol '
                      '%(protocol)s', {'port': port['port'],
                                       'protocol': attrs['protocol']})
            listener = self._facade.create_listener(lb_id, **attrs)
        else:
            changes = self._get_listener_changes(listener)
            if changes:
                LOG.info('Updating listener %(id)s of load balancer %(lb)s',
                         {'id': listener.id, 'lb': lb_id})
                self._facade.update_listener(lb_id, listener.id, **changes)
        self._reconciled.add(listener.id)
        return listener

    def _delete_listener(self, lb_id, listener):
        pool = self._facade.get_pool_by_listener(lb_id, listener.id)
        if pool is not None:
            if pool.health_monitor_id:
                self._facade.delete_health_monitor(lb_id,
                                                   pool.health_monitor_id)
            # Members are deleted together with the pool.
            self._facade.delete_pool(lb_id, pool.id)
        self._facade.delete_listener(lb_id, listener.id)

    def delete_unclaimed_listeners(self, lb_id, listener_map):
        """Deletes listeners of this Service no port maps to anymore."""
        for listener in listener_map.values():
            if listener.id in self._reconciled:
                continue
            if not self._is_ours(listener):
                LOG.debug('Ignoring listener %(id)s used by others, tags: '
                          '%(tags)s', {'id': listener.id,
                                       'tags': listener.tags})
                continue
            self._delete_listener(lb_id, listener)

    def delete_service_listeners(self, lb_id, service):
        """Deletes the listeners of the Service ports on a shared LB.

        Only listeners tagged with the Service are touched.
        """
        listener_map = self.get_listener_map(lb_id)
        for port in utils.get_service_ports(service):
            listener = listener_map.get(self._listener_key(port))
            if listener is not None and self._lb_name in (listener.tags or
                                                          []):
                self._delete_listener(lb_id, listener)

    def delete_all(self, lb_id):
        """Deletes monitors, then pools and listeners of the LB."""
        for pool in self._facade.pools(lb_id):
            if pool.health_monitor_id:
                self._facade.delete_health_monitor(lb_id,
                                                   pool.health_monitor_id)
        for listener in self._facade.listeners(lb_id):
            self._delete_listener(lb_id, listener)

    # Pools and members

    def ensure_pool(self, lb_id, index, listener, port, nodes):
        pool = self._facade.get_pool_by_listener(lb_id, listener.id)
        attrs = self.build_pool_attrs(listener.protocol)

        if pool is not None and pool.protocol != attrs['protocol']:
            LOG.info('Deleting pool %(pool)s of listener %(listener)s, '
                     'protocol changed to %(protocol)s',
                     {'pool': pool.id, 'listener': listener.id,
                      'protocol': attrs['protocol']})
            self._facade.delete_pool(lb_id, pool.id)
            pool = None

        if pool is None:
            attrs['listener_id'] = listener.id
            attrs['name'] = utils.get_pool_name(index, self._lb_name)
            pool = self._facade.create_pool(lb_id, **attrs)
        else:
            changes = {}
            if pool.lb_algorithm != attrs['lb_algorithm']:
                changes['lb_algorithm'] = attrs['lb_algorithm']
            persistence = (pool.session_persistence or {}).get('type')
            if persistence != self._svc_conf.session_persistence:
                changes['session_persistence'] = attrs.get(
                    'session_persistence')
            if changes:
                self._facade.update_pool(lb_id, pool.id, **changes)

        self.ensure_members(lb_id, pool, port, nodes)
        return pool

    def ensure_members(self, lb_id, pool, port, nodes):
        current = {_member_key(m.name, m.address, m.protocol_port,
                               m.monitor_port): m
                   for m in self._facade.members(pool.id)}
        members, keys = self.build_members(port, nodes)
        if set(current) == keys:
            LOG.debug('Members of pool %s are up to date', pool.id)
            return

        if self._svc_conf.capabilities.serial_api:
            self._update_members_serially(lb_id, pool.id, current, members)
        else:
            self._facade.batch_update_members(lb_id, pool.id, members)

    def _update_members_serially(self, lb_id, pool_id, current, members):
        desired = {_member_key(m['name'], m['address'], m['protocol_port'],
                               m.get('monitor_port')): m
                   for m in members}
        for key, member in current.items():
            if key not in desired:
                self._facade.delete_member(lb_id, pool_id, member.id)
        for key, member in desired.items():
            if key not in current:
                self._facade.create_member(lb_id, pool_id, **member)

    # Health monitors

    def ensure_monitor(self, lb_id, index, pool, port):
        svc_conf = self._svc_conf
        monitor = None
        if pool.health_monitor_id:
            monitor = self._facade.get_health_monitor(pool.health_monitor_id)

        if monitor is not None and not svc_conf.enable_monitor:
            LOG.info('Deleting health monitor %(monitor)s of pool %(pool)s',
                     {'monitor': monitor.id, 'pool': pool.id})
            self._facade.delete_health_monitor(lb_id, monitor.id)
            return None
        if not svc_conf.enable_monitor:
            return None

        attrs = self.build_monitor_attrs(port)
        attrs['name'] = utils.get_monitor_name(index, self._lb_name)
        if monitor is not None and monitor.type != attrs['type']:
            # The externalTrafficPolicy of the Service has changed.
            LOG.info('Recreating health monitor %(monitor)s of pool '
                     '%(pool)s as %(type)s', {'monitor': monitor.id,
                                              'pool': pool.id,
                                              'type': attrs['type']})
            self._facade.delete_health_monitor(lb_id, monitor.id)
            monitor = None

        if monitor is None:
            attrs['pool_id'] = pool.id
            return self._facade.create_health_monitor(lb_id, **attrs)

        changes = {attr: attrs[attr]
                   for attr in ('delay', 'timeout', 'max_retries',
                                'max_retries_down', 'name')
                   if getattr(monitor, attr) != attrs[attr]}
        if changes:
            self._facade.update_health_monitor(lb_id, monitor.id, **changes)
        return monitor

    # Passes

    def reconcile(self, lb_id, service, nodes):
        """Converges the graph of a load balancer that already existed."""
        listener_map = self.get_listener_map(lb_id)
        LOG.debug('Existing listeners of load balancer %(lb)s: %(keys)s',
                  {'lb': lb_id, 'keys': list(listener_map)})
        self.check_listener_ports(service, listener_map)
        for index, port in enumerate(utils.get_service_ports(service)):
            listener = self.ensure_listener(lb_id, index, port, listener_map)
            pool = self.ensure_pool(lb_id, index, listener, port, nodes)
            self.ensure_monitor(lb_id, index, pool, port)
        self.delete_unclaimed_listeners(lb_id, listener_map)

    def update_pools(self, lb_id, service, nodes):
        """Refreshes pools and members of the existing listeners."""
        listener_map = self.get_listener_map(lb_id)
        for index, port in enumerate(utils.get_service_ports(service)):
            key = self._listener_key(port)
            listener = listener_map.get(key)
            if listener is None:
                raise k_exc.LoadBalancerError(
                    'Load balancer %s does not contain required listener for '
                    'port %s and protocol %s' % (lb_id, key[1], key[0]))
            self.ensure_pool(lb_id, index, listener, port, nodes)
