# Copyright (c) 2017 RedHat, Inc.
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

import re

from openstack import exceptions as os_exc
from oslo_log import log as logging

from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)

_FIP_DESCRIPTION_RE = re.compile(re.escape(k_const.FIP_DESCRIPTION_PHRASE))


def get_floating_network_id(facade):
    """Returns the first external network with an IPv4 subnet.

    Returns None when there is no such network.
    """
    for network in facade.networks(is_router_external=True):
        if not network.subnet_ids:
            continue
        subnets = {subnet.id: subnet
                   for subnet in facade.subnets(network_id=network.id)}
        for subnet_id in network.subnet_ids:
            subnet = subnets.get(subnet_id)
            # NOTE: subnets of other projects are not listed, such a network
            # is usable all the same.
            if subnet is None or subnet.ip_version == 4:
                return network.id
    return None


def is_created_by_us(fip):
    return bool(_FIP_DESCRIPTION_RE.search(fip.description or ''))


class FloatingIpDriver(object):
    """Floating IP of the load balancer VIP port.

    Only the owner of a load balancer may create, attach, detach or delete
    its floating IP.
    """

    def __init__(self, facade):
        self._facade = facade

    def get_floating_network_id(self):
        return get_floating_network_id(self._facade)

    def get_service_address(self, service, lb, svc_conf, is_owner,
                            cluster_name):
        """Returns the address the Service is reachable at."""
        if svc_conf.internal:
            self._release_for_internal(lb, svc_conf, is_owner)
            return lb.vip_address

        port_id = lb.vip_port_id
        fip = self._facade.get_floating_ip_by_port(port_id)
        if fip is not None:
            LOG.debug('Found floating IP %(fip)s of load balancer port '
                      '%(port)s', {'fip': fip.floating_ip_address,
                                   'port': port_id})
            return fip.floating_ip_address

        loadbalancer_ip = svc_conf.loadbalancer_ip
        if loadbalancer_ip:
            fip = self._facade.get_floating_ip_by_address(loadbalancer_ip)
            if fip is not None:
                if fip.port_id:
                    raise k_exc.Conflict(
                        'floating IP %s is not available' % loadbalancer_ip)
                self._check_owner(lb, is_owner, 'attach')
                self.associate(fip.id, port_id)
                return fip.floating_ip_address

        if not svc_conf.public_network_id:
            LOG.warning('Floating network configuration not provided for '
                        'Service %s, forcing to ensure an internal load '
                        'balancer service', utils.get_res_unique_name(service))
            return lb.vip_address

        self._check_owner(lb, is_owner, 'create')
        description = k_const.FIP_DESCRIPTION % {
            'service': utils.get_res_unique_name(service),
            'cluster': cluster_name}
        spec = svc_conf.public_subnet_spec
        if not loadbalancer_ip and spec and spec.matcher_configured():
            fip = self._allocate_in_matching_subnet(
                svc_conf.public_network_id, spec, port_id, description)
        else:
            fip = self.allocate_ip(svc_conf.public_network_id,
                                   spec.subnet_id if spec else None,
                                   description, port_id, loadbalancer_ip)
        LOG.info('Created floating IP %(fip)s for load balancer %(lb)s',
                 {'fip': fip.floating_ip_address, 'lb': lb.id})
        return fip.floating_ip_address

    def _allocate_in_matching_subnet(self, network_id, spec, port_id,
                                     description):
        subnets = spec.list_subnets_for_network(self._facade, network_id)
        if not subnets:
            raise k_exc.InvalidConfiguration(
                'No subnet matching %r found for network %s' %
                (spec, network_id))
        LOG.debug('Found %(count)d subnets matching %(spec)r for network '
                  '%(net)s', {'count': len(subnets), 'spec': spec,
                              'net': network_id})
        last_error = None
        for subnet in subnets:
            try:
                return self.allocate_ip(network_id, subnet.id, description,
                                        port_id)
            except os_exc.SDKException as ex:
                # NOTE: the subnet may have run out of free addresses, the
                # next one matching is tried.
                LOG.debug('Cannot use subnet %(subnet)s: %(err)s',
                          {'subnet': subnet.name, 'err': ex})
                last_error = ex
        raise k_exc.ResourceNotReady(
            'No free subnet matching %r found for network %s (last error '
            '%s)' % (spec, network_id, last_error))

    def allocate_ip(self, pub_net_id, pub_subnet_id=None, description=None,
                    port_id_to_be_associated=None, ip_address=None):
        attrs = {'floating_network_id': pub_net_id,
                 'description': description}
        if pub_subnet_id:
            attrs['subnet_id'] = pub_subnet_id
        if port_id_to_be_associated:
            attrs['port_id'] = port_id_to_be_associated
        if ip_address:
            attrs['floating_ip_address'] = ip_address
        try:
            return self._facade.create_floating_ip(**attrs)
        except os_exc.SDKException:
            LOG.warning("Failed to create floating IP - netid=%s subnet=%s",
                        pub_net_id, pub_subnet_id)
            raise

    def _update(self, fip_id, vip_port_id):
        try:
            self._facade.update_floating_ip_port(fip_id, vip_port_id)
        except os_exc.ConflictException:
            LOG.warning("Conflict when assigning floating IP with id %s. "
                        "Checking if it's already assigned correctly.",
                        fip_id)
            fip = self._facade.get_floating_ip(fip_id)
            if fip is None:
                LOG.error("Failed to get FIP %s - it doesn't exist.", fip_id)
                raise
            if fip.port_id != vip_port_id:
                LOG.error('Failed to assign FIP %s to VIP port %s. It is '
                          'probably already bound', fip_id, vip_port_id)
                raise
            LOG.debug('FIP %s already assigned to %s', fip_id, vip_port_id)

    def associate(self, fip_id, vip_port_id):
        self._update(fip_id, vip_port_id)

    def disassociate(self, fip_id):
        self._update(fip_id, None)

    def _check_owner(self, lb, is_owner, action):
        if not is_owner:
            raise k_exc.NotOwner(lb.id, action)

    def _release_for_internal(self, lb, svc_conf, is_owner):
        fip = self._facade.get_floating_ip_by_port(lb.vip_port_id)
        if fip is None:
            return
        self._check_owner(lb, is_owner, 'detach')
        sharers = [tag for tag in lb.tags or []
                   if tag.startswith(k_const.SERVICE_PREFIX) and
                   tag != svc_conf.lb_name]
        if sharers:
            raise k_exc.SharingNotAllowed(
                'Load balancer %s is shared with %d other Services and can '
                'not become internal' % (lb.id, len(sharers)))
        LOG.info('Detaching floating IP %(fip)s from internal load balancer '
                 '%(lb)s', {'fip': fip.floating_ip_address, 'lb': lb.id})
        self.disassociate(fip.id)
        if is_created_by_us(fip) and not svc_conf.keep_floating_ip:
            self._facade.delete_floating_ip(fip.id)

    def release_for_delete(self, lb, svc_conf):
        """Deletes the floating IP of a load balancer going away.

        Floating IPs not created by us, or kept on request, stay.
        """
        if svc_conf.keep_floating_ip or not lb.vip_port_id:
            return
        fip = self._facade.get_floating_ip_by_port(lb.vip_port_id)
        if fip is None:
            return
        LOG.debug('Matching floating IP %(fip)s with description '
                  '%(desc)r', {'fip': fip.floating_ip_address,
                               'desc': fip.description})
        if is_created_by_us(fip):
            self._facade.delete_floating_ip(fip.id)
