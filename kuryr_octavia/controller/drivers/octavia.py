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

import random
import threading

from openstack import exceptions as os_exc
from oslo_config import cfg
from oslo_log import log as logging
from oslo_utils import timeutils

from kuryr_octavia import clients
from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc

CONF = cfg.CONF
LOG = logging.getLogger(__name__)

# NOTE(yboaron): Octavia locks the whole load balancer graph while a change
# is applied, every call changing it is followed by polling the load
# balancer provisioning_status with a backoff timer until it is ACTIVE
# again. Creating a load balancer takes way longer than the rest, so the
# 'slow' interval is used for it.
_LB_STS_POLL_FAST_INTERVAL = 1
_LB_STS_POLL_SLOW_INTERVAL = 3
_MAX_POLL_INTERVAL = 15

_IGNORED_STATUSES = (k_const.PROVISIONING_STATUS_DELETED,
                     k_const.PROVISIONING_STATUS_PENDING_DELETE)


class OctaviaDriver(object):
    """Cloud API facade used by a single reconcile pass.

    Wraps the openstacksdk load balancer, network, compute and key manager
    proxies. The cancel event is checked before every remote call, a set
    event aborts the pass with ReconcileCancelled. Calls changing the load
    balancer graph return only once the load balancer is ACTIVE again.
    """

    def __init__(self, cancel=None, timeout=None):
        self._cancel = cancel if cancel is not None else threading.Event()
        if timeout is None:
            timeout = CONF.octavia_defaults.lbaas_activation_timeout
        self._timeout = timeout

    def check_cancelled(self):
        if self._cancel.is_set():
            raise k_exc.ReconcileCancelled('Reconciliation was cancelled')

    @property
    def _lbaas(self):
        self.check_cancelled()
        return clients.get_loadbalancer_client()

    @property
    def _os_net(self):
        self.check_cancelled()
        return clients.get_network_client()

    @property
    def _compute(self):
        self.check_cancelled()
        return clients.get_compute_client()

    @property
    def _key_manager(self):
        self.check_cancelled()
        return clients.get_keymanager_client()

    # Load balancers

    def get_load_balancer(self, lb_id):
        try:
            return self._lbaas.get_load_balancer(lb_id)
        except os_exc.NotFoundException:
            return None

    def get_load_balancer_by_name(self, name):
        lbs = [lb for lb in self._lbaas.load_balancers(name=name)
               if lb.provisioning_status not in _IGNORED_STATUSES]
        if len(lbs) > 1:
            raise k_exc.MultipleResults('load balancer %s' % name)
        if not lbs:
            return None
        return lbs[0]

    def create_load_balancer(self, **attrs):
        lb = self._lbaas.create_load_balancer(**attrs)
        LOG.info('Created load balancer %(id)s (%(name)s)',
                 {'id': lb.id, 'name': attrs.get('name')})
        return lb

    def update_load_balancer_tags(self, lb_id, tags):
        LOG.debug('Updating tags of load balancer %(lb)s to %(tags)s',
                  {'lb': lb_id, 'tags': tags})
        self._lbaas.update_load_balancer(lb_id, tags=tags)
        return self.wait_for_active(lb_id)

    def delete_load_balancer(self, lb_id, cascade=False):
        LOG.info('Deleting load balancer %(lb)s, cascade: %(cascade)s',
                 {'lb': lb_id, 'cascade': cascade})
        for remaining in self._provisioning_timer(self._timeout):
            try:
                try:
                    self._lbaas.delete_load_balancer(lb_id, cascade=cascade)
                    break
                except (os_exc.ConflictException,
                        os_exc.BadRequestException):
                    self.wait_for_provisioning(lb_id, remaining)
            except (os_exc.NotFoundException, k_exc.ResourceNotFound):
                return
        else:
            raise k_exc.ResourceNotReady(lb_id)
        self.wait_for_deletion(lb_id)

    def wait_for_provisioning(self, lb_id, timeout=None,
                              interval=_LB_STS_POLL_FAST_INTERVAL):
        """Waits until the load balancer leaves the PENDING_* states.

        Returns the load balancer once it is ACTIVE or in ERROR, raises
        ResourceNotFound when it is gone.
        """
        if timeout is None:
            timeout = self._timeout
        status = None
        for remaining in self._provisioning_timer(timeout, interval):
            lb = self.get_load_balancer(lb_id)
            if lb is None:
                raise k_exc.ResourceNotFound('load balancer %s' % lb_id)
            status = lb.provisioning_status
            if status in (k_const.PROVISIONING_STATUS_ACTIVE,
                          k_const.PROVISIONING_STATUS_ERROR):
                LOG.debug("Provisioning of load balancer %(lb)s finished "
                          "with %(status)s", {'lb': lb_id, 'status': status})
                return lb
            if status == k_const.PROVISIONING_STATUS_DELETED:
                raise k_exc.ResourceNotFound('load balancer %s' % lb_id)
            LOG.debug("Provisioning status %(status)s for %(lb)s, "
                      "%(rem).3gs remaining until timeout",
                      {'status': status, 'lb': lb_id, 'rem': remaining})

        raise k_exc.LoadBalancerNotReady(lb_id, status)

    def wait_for_active(self, lb_id, timeout=None,
                        interval=_LB_STS_POLL_FAST_INTERVAL):
        lb = self.wait_for_provisioning(lb_id, timeout, interval)
        if lb.provisioning_status != k_const.PROVISIONING_STATUS_ACTIVE:
            raise k_exc.LoadBalancerNotReady(lb_id, lb.provisioning_status)
        return lb

    def wait_for_creation(self, lb_id):
        return self.wait_for_provisioning(lb_id,
                                          interval=_LB_STS_POLL_SLOW_INTERVAL)

    def wait_for_deletion(self, lb_id, timeout=None,
                          interval=_LB_STS_POLL_FAST_INTERVAL):
        if timeout is None:
            timeout = self._timeout
        status = k_const.PROVISIONING_STATUS_PENDING_DELETE
        for remaining in self._provisioning_timer(timeout, interval):
            lb = self.get_load_balancer(lb_id)
            if lb is None:
                return
            status = lb.provisioning_status
            if status == k_const.PROVISIONING_STATUS_DELETED:
                return

        raise k_exc.LoadBalancerNotReady(lb_id, status)

    def _provisioning_timer(self, timeout,
                            interval=_LB_STS_POLL_FAST_INTERVAL):
        with timeutils.StopWatch(duration=timeout) as timer:
            while not timer.expired():
                self.check_cancelled()
                yield timer.leftover()
                interval = interval * 2 * random.gauss(0.8, 0.05)
                interval = min(interval, _MAX_POLL_INTERVAL)
                interval = min(interval, timer.leftover())
                if interval:
                    # NOTE: waiting on the event lets a cancellation end the
                    # sleep right away.
                    self._cancel.wait(interval)

    # Listeners

    def listeners(self, lb_id):
        return list(self._lbaas.listeners(load_balancer_id=lb_id))

    def create_listener(self, lb_id, **attrs):
        listener = self._lbaas.create_listener(loadbalancer_id=lb_id,
                                               **attrs)
        LOG.info('Created listener %(id)s (%(protocol)s:%(port)s) on load '
                 'balancer %(lb)s', {'id': listener.id,
                                     'protocol': attrs.get('protocol'),
                                     'port': attrs.get('protocol_port'),
                                     'lb': lb_id})
        self.wait_for_active(lb_id)
        return listener

    def update_listener(self, lb_id, listener_id, **attrs):
        LOG.debug('Updating listener %(id)s with %(attrs)s',
                  {'id': listener_id, 'attrs': attrs})
        self._lbaas.update_listener(listener_id, **attrs)
        self.wait_for_active(lb_id)

    def delete_listener(self, lb_id, listener_id):
        LOG.info('Deleting listener %(id)s of load balancer %(lb)s',
                 {'id': listener_id, 'lb': lb_id})
        try:
            self._lbaas.delete_listener(listener_id)
        except os_exc.NotFoundException:
            return
        self.wait_for_active(lb_id)

    # Pools

    def pools(self, lb_id):
        return list(self._lbaas.pools(loadbalancer_id=lb_id))

    def get_pool_by_listener(self, lb_id, listener_id):
        pools = [p for p in self.pools(lb_id)
                 if listener_id in {listener['id']
                                    for listener in p.listeners or []}]
        if len(pools) > 1:
            raise k_exc.MultipleResults('pool of listener %s' % listener_id)
        if not pools:
            return None
        return pools[0]

    def create_pool(self, lb_id, **attrs):
        pool = self._lbaas.create_pool(**attrs)
        LOG.info('Created pool %(id)s (%(protocol)s) on load balancer '
                 '%(lb)s', {'id': pool.id, 'protocol': attrs.get('protocol'),
                            'lb': lb_id})
        self.wait_for_active(lb_id)
        return pool

    def update_pool(self, lb_id, pool_id, **attrs):
        LOG.debug('Updating pool %(id)s with %(attrs)s',
                  {'id': pool_id, 'attrs': attrs})
        self._lbaas.update_pool(pool_id, **attrs)
        self.wait_for_active(lb_id)

    def delete_pool(self, lb_id, pool_id):
        LOG.info('Deleting pool %(id)s of load balancer %(lb)s',
                 {'id': pool_id, 'lb': lb_id})
        try:
            self._lbaas.delete_pool(pool_id)
        except os_exc.NotFoundException:
            return
        self.wait_for_active(lb_id)

    # Members

    def members(self, pool_id):
        return list(self._lbaas.members(pool_id))

    def create_member(self, lb_id, pool_id, **attrs):
        member = self._lbaas.create_member(pool_id, **attrs)
        LOG.info('Created member %(addr)s:%(port)s in pool %(pool)s',
                 {'addr': attrs.get('address'),
                  'port': attrs.get('protocol_port'), 'pool': pool_id})
        self.wait_for_active(lb_id)
        return member

    def delete_member(self, lb_id, pool_id, member_id):
        LOG.info('Deleting member %(id)s of pool %(pool)s',
                 {'id': member_id, 'pool': pool_id})
        try:
            self._lbaas.delete_member(member_id, pool_id)
        except os_exc.NotFoundException:
            return
        self.wait_for_active(lb_id)

    def batch_update_members(self, lb_id, pool_id, members):
        """Replaces the whole member list of the pool in a single call."""
        # NOTE: openstacksdk has no helper for the batch member update.
        LOG.info('Updating pool %(pool)s members to %(count)d entries',
                 {'pool': pool_id, 'count': len(members)})
        response = self._lbaas.put('/lbaas/pools/%s/members' % pool_id,
                                   json={'members': members})
        os_exc.raise_from_response(response)
        self.wait_for_active(lb_id)

    # Health monitors

    def get_health_monitor(self, monitor_id):
        try:
            return self._lbaas.get_health_monitor(monitor_id)
        except os_exc.NotFoundException:
            return None

    def create_health_monitor(self, lb_id, **attrs):
        monitor = self._lbaas.create_health_monitor(**attrs)
        LOG.info('Created health monitor %(id)s for pool %(pool)s',
                 {'id': monitor.id, 'pool': attrs.get('pool_id')})
        self.wait_for_active(lb_id)
        return monitor

    def update_health_monitor(self, lb_id, monitor_id, **attrs):
        LOG.debug('Updating health monitor %(id)s with %(attrs)s',
                  {'id': monitor_id, 'attrs': attrs})
        self._lbaas.update_health_monitor(monitor_id, **attrs)
        self.wait_for_active(lb_id)

    def delete_health_monitor(self, lb_id, monitor_id):
        LOG.info('Deleting health monitor %(id)s', {'id': monitor_id})
        try:
            self._lbaas.delete_health_monitor(monitor_id)
        except os_exc.NotFoundException:
            return
        self.wait_for_active(lb_id)

    # Floating IPs

    def get_floating_ip(self, fip_id):
        try:
            return self._os_net.get_ip(fip_id)
        except os_exc.NotFoundException:
            return None

    def get_floating_ip_by_port(self, port_id):
        fips = list(self._os_net.ips(port_id=port_id))
        if len(fips) > 1:
            raise k_exc.MultipleResults('floating IP of port %s' % port_id)
        return fips[0] if fips else None

    def get_floating_ip_by_address(self, address):
        fips = list(self._os_net.ips(floating_ip_address=address))
        if len(fips) > 1:
            raise k_exc.MultipleResults('floating IP %s' % address)
        return fips[0] if fips else None

    def create_floating_ip(self, **attrs):
        fip = self._os_net.create_ip(**attrs)
        LOG.info('Created floating IP %(addr)s for port %(port)s',
                 {'addr': fip.floating_ip_address,
                  'port': attrs.get('port_id')})
        return fip

    def update_floating_ip_port(self, fip_id, port_id):
        LOG.info('Associating floating IP %(fip)s to port %(port)s',
                 {'fip': fip_id, 'port': port_id})
        return self._os_net.update_ip(fip_id, port_id=port_id)

    def delete_floating_ip(self, fip_id):
        LOG.info('Deleting floating IP %s', fip_id)
        try:
            self._os_net.delete_ip(fip_id)
        except os_exc.NotFoundException:
            LOG.debug('Floating IP %s already deleted', fip_id)

    # Networks, subnets and ports

    def get_subnet(self, subnet_id):
        try:
            return self._os_net.get_subnet(subnet_id)
        except os_exc.NotFoundException:
            return None

    def subnets(self, **filters):
        return list(self._os_net.subnets(**filters))

    def networks(self, **filters):
        return list(self._os_net.networks(**filters))

    def get_port(self, port_id):
        try:
            return self._os_net.get_port(port_id)
        except os_exc.NotFoundException:
            return None

    def ports(self, **filters):
        return list(self._os_net.ports(**filters))

    def update_port_security_groups(self, port_id, security_group_ids):
        """Sets the security groups of the port.

        Returns False when the port no longer exists.
        """
        try:
            self._os_net.update_port(port_id,
                                     security_groups=list(security_group_ids))
        except os_exc.NotFoundException:
            LOG.debug('Port %s already deleted', port_id)
            return False
        return True

    def set_port_tags(self, port, tags):
        try:
            self._os_net.set_tags(port, list(tags))
        except os_exc.NotFoundException:
            LOG.debug('Port %s already deleted', port.id)

    # Security groups

    def find_security_group_by_name(self, name):
        sgs = list(self._os_net.security_groups(name=name))
        if len(sgs) > 1:
            raise k_exc.MultipleResults('security group %s' % name)
        return sgs[0] if sgs else None

    def create_security_group(self, name, description):
        sg = self._os_net.create_security_group(name=name,
                                                description=description)
        LOG.info('Created security group %(id)s (%(name)s)',
                 {'id': sg.id, 'name': name})
        return sg

    def delete_security_group(self, sg_id):
        LOG.info('Deleting security group %s', sg_id)
        try:
            self._os_net.delete_security_group(sg_id)
        except os_exc.NotFoundException:
            LOG.debug('Security group %s already deleted', sg_id)

    def security_group_rules(self, **filters):
        return list(self._os_net.security_group_rules(**filters))

    def create_security_group_rule(self, **attrs):
        LOG.debug('Creating security group rule %s', attrs)
        return self._os_net.create_security_group_rule(**attrs)

    def delete_security_group_rule(self, rule_id):
        LOG.debug('Deleting security group rule %s', rule_id)
        try:
            self._os_net.delete_security_group_rule(rule_id)
        except os_exc.NotFoundException:
            LOG.debug('Security group rule %s already deleted', rule_id)

    # Compute

    def find_server(self, name):
        return self._compute.find_server(name, ignore_missing=True)

    def server_interfaces(self, server_id):
        return list(self._compute.server_interfaces(server_id))

    # Key manager

    def container_exists(self, container_ref):
        container_id = container_ref.rstrip('/').rsplit('/', 1)[-1]
        try:
            self._key_manager.get_container(container_id)
        except os_exc.NotFoundException:
            return False
        return True
