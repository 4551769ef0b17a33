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

from openstack import exceptions as os_exc
from oslo_log import log as logging

from kuryr_octavia import capabilities as caps
from kuryr_octavia import config
from kuryr_octavia import constants as k_const
from kuryr_octavia.controller.drivers import lb_resources
from kuryr_octavia.controller.drivers import octavia
from kuryr_octavia.controller.drivers import ownership
from kuryr_octavia.controller.drivers import public_ip
from kuryr_octavia.controller.drivers import security_groups
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import service_config
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)


class LoadBalancerHandler(object):
    """Ensures, updates and deletes the load balancer of a Service.

    Every call is a pass of its own: the options are read, the Octavia
    capabilities discovered and a new OctaviaDriver is bound to the given
    cancel event. All the calls are idempotent, a failed pass is simply run
    again.
    """

    def _start_pass(self, cancel):
        options = config.get_lb_options()
        facade = octavia.OctaviaDriver(cancel)
        facade.check_cancelled()
        capabilities = caps.discover(options.lb_provider,
                                     options.serial_api_providers)
        return options, capabilities, facade

    def _select_nodes(self, service, nodes, options):
        selector = service_config.get_node_selector(service, options)
        return utils.filter_nodes(nodes, selector)

    def _check_active(self, lb):
        if lb.provisioning_status != k_const.PROVISIONING_STATUS_ACTIVE:
            raise k_exc.LoadBalancerNotReady(lb.id, lb.provisioning_status)

    def _get_security_group_reconciler(self, facade, options):
        return security_groups.SecurityGroupReconciler(
            facade, options.node_security_group_ids)

    def _get_status(self, service, svc_conf, options, address):
        hostname = utils.get_string_annotation(service,
                                               k_const.ANNOTATION_HOSTNAME)
        if hostname:
            return {'ingress': [{'hostname': hostname}]}
        # NOTE: a hostname keeps kube-proxy from bypassing the load balancer,
        # which would drop the PROXY protocol header.
        if svc_conf.proxy_protocol and options.enable_ingress_hostname:
            return {'ingress': [{'hostname': '%s.%s' % (
                address, options.ingress_hostname_suffix)}]}
        return {'ingress': [{'ip': address}]}

    def _build_create_attrs(self, facade, service, nodes, svc_conf,
                            options):
        reconciler = lb_resources.LBResourcesReconciler(facade, svc_conf,
                                                        True)
        attrs = {
            'name': svc_conf.lb_name,
            'description': k_const.LB_DESCRIPTION % {
                'service': utils.get_res_unique_name(service),
                'cluster': options.cluster_name},
            'provider': svc_conf.provider,
            'listeners': reconciler.build_create_listeners(service, nodes),
        }
        if svc_conf.supports_tags:
            attrs['tags'] = [svc_conf.lb_name]
        if svc_conf.flavor_id:
            attrs['flavor_id'] = svc_conf.flavor_id
        if svc_conf.availability_zone:
            attrs['availability_zone'] = svc_conf.availability_zone
        if svc_conf.vip_port_id:
            attrs['vip_port_id'] = svc_conf.vip_port_id
        else:
            if svc_conf.lb_subnet_id:
                attrs['vip_subnet_id'] = svc_conf.lb_subnet_id
            if svc_conf.lb_network_id:
                attrs['vip_network_id'] = svc_conf.lb_network_id
            else:
                LOG.debug('network-id parameter not passed, it will be '
                          'inferred from subnet-id')
        # For an external load balancer the loadBalancerIP is a floating IP.
        if svc_conf.loadbalancer_ip and svc_conf.internal:
            attrs['vip_address'] = svc_conf.loadbalancer_ip
        return attrs

    def _create_loadbalancer(self, facade, service, nodes, svc_conf,
                             options):
        lb_name = svc_conf.lb_name
        attrs = self._build_create_attrs(facade, service, nodes, svc_conf,
                                         options)
        LOG.info('Creating fully populated load balancer %(name)s for '
                 'Service %(svc)s', {'name': lb_name,
                                     'svc': utils.get_res_unique_name(
                                         service)})
        try:
            lb = facade.create_load_balancer(**attrs)
        except os_exc.ConflictException:
            # Another pass for the same Service may have won the race.
            lb = facade.get_load_balancer_by_name(lb_name)
            if lb is None:
                raise
            LOG.warning('Load balancer %(name)s was created concurrently, '
                        'using %(id)s', {'name': lb_name, 'id': lb.id})
            return ownership.LoadBalancerUsage(lb, lb_name, True)

        lb = facade.wait_for_creation(lb.id)
        if lb.provisioning_status == k_const.PROVISIONING_STATUS_ERROR:
            LOG.error('Load balancer %s went into ERROR state, deleting it',
                      lb.id)
            facade.delete_load_balancer(lb.id, cascade=True)
            raise k_exc.LoadBalancerInErrorState(lb.id)

        try:
            facade.get_load_balancer_by_name(lb_name)
        except k_exc.MultipleResults:
            # A concurrent pass created one as well, the other one is kept.
            LOG.error('Duplicate load balancer %(name)s found, deleting '
                      '%(id)s created by this pass', {'name': lb_name,
                                                      'id': lb.id})
            facade.delete_load_balancer(lb.id, cascade=True)
            raise
        return ownership.LoadBalancerUsage(lb, lb_name, True, created=True)

    def ensure_loadbalancer(self, service, nodes, cancel=None):
        """Creates or converges the load balancer of the Service.

        :param service: Kubernetes Service dict
        :param nodes: Kubernetes Node dicts
        :param cancel: threading.Event aborting the pass when set
        :returns: tuple of the Service load balancer status dict and the
                  annotations to store on the Service
        """
        options, capabilities, facade = self._start_pass(cancel)
        nodes = self._select_nodes(service, nodes, options)
        svc_conf = service_config.resolve(service, nodes, options,
                                          capabilities, facade)

        usage = ownership.find_for_ensure(facade, service, svc_conf,
                                          options.max_shared_lb)
        if usage is None:
            usage = self._create_loadbalancer(facade, service, nodes,
                                              svc_conf, options)
        lb = usage.lb
        self._check_active(lb)
        LOG.debug('Load balancer %(lb)s ensured, owner: %(owner)s, created: '
                  '%(created)s', {'lb': lb.id, 'owner': usage.is_owner,
                                  'created': usage.created})

        if not usage.created:
            reconciler = lb_resources.LBResourcesReconciler(
                facade, svc_conf, usage.is_owner)
            reconciler.reconcile(lb.id, service, nodes)

        fip_driver = public_ip.FloatingIpDriver(facade)
        address = fip_driver.get_service_address(
            service, lb, svc_conf, usage.is_owner, options.cluster_name)

        annotations = {k_const.ANNOTATION_LB_ID: lb.id}
        if svc_conf.supports_tags:
            lb = ownership.add_tag(facade, lb, svc_conf.lb_name)

        status = self._get_status(service, svc_conf, options, address)

        if options.manage_security_groups:
            member_subnet_id = (svc_conf.lb_member_subnet_id or
                                lb.vip_subnet_id)
            self._get_security_group_reconciler(facade, options).ensure(
                service, nodes, member_subnet_id, options.cluster_name)
        return status, annotations

    def update_loadbalancer(self, service, nodes, cancel=None):
        """Refreshes the pool members of the Service load balancer."""
        options, capabilities, facade = self._start_pass(cancel)
        nodes = self._select_nodes(service, nodes, options)
        svc_conf = service_config.resolve_for_update(service, nodes, options,
                                                     capabilities, facade)
        LOG.debug('Updating %(count)d nodes for Service %(svc)s',
                  {'count': len(nodes),
                   'svc': utils.get_res_unique_name(service)})

        if svc_conf.lb_id:
            lb = facade.get_load_balancer(svc_conf.lb_id)
        else:
            # A Service created before load balancer sharing was supported.
            lb = ownership.find_by_name(facade, service, svc_conf.lb_name)
        if lb is None:
            raise k_exc.ResourceNotFound(
                'load balancer of Service %s' %
                utils.get_res_unique_name(service))
        self._check_active(lb)

        reconciler = lb_resources.LBResourcesReconciler(
            facade, svc_conf, lb.name == svc_conf.lb_name)
        reconciler.update_pools(lb.id, service, nodes)

        if options.manage_security_groups:
            member_subnet_id = (svc_conf.lb_member_subnet_id or
                                lb.vip_subnet_id)
            self._get_security_group_reconciler(facade, options).ensure(
                service, nodes, member_subnet_id, options.cluster_name)

    def _release(self, facade, service, svc_conf, usage, options):
        lb = usage.lb
        plan = ownership.plan_delete(lb, svc_conf.lb_name,
                                     svc_conf.supports_tags)
        in_error = (lb.provisioning_status ==
                    k_const.PROVISIONING_STATUS_ERROR)
        # Only a cascade delete is accepted by a load balancer in ERROR.
        if not (in_error and plan.need_delete):
            self._check_active(lb)

        if plan.need_delete:
            public_ip.FloatingIpDriver(facade).release_for_delete(lb,
                                                                  svc_conf)
            if options.cascade_delete or in_error:
                facade.delete_load_balancer(lb.id, cascade=True)
            else:
                reconciler = lb_resources.LBResourcesReconciler(
                    facade, svc_conf, usage.is_owner)
                reconciler.delete_all(lb.id)
                facade.delete_load_balancer(lb.id)
            return

        reconciler = lb_resources.LBResourcesReconciler(facade, svc_conf,
                                                        usage.is_owner)
        reconciler.delete_service_listeners(lb.id, service)
        if plan.update_tag:
            ownership.remove_tag(facade, lb, svc_conf.lb_name)

    def delete_loadbalancer(self, service, cancel=None):
        """Releases what the Service uses of its load balancer.

        The load balancer itself is deleted only by its last user, and only
        when it was created for a Service.
        """
        options, capabilities, facade = self._start_pass(cancel)
        svc_conf = service_config.resolve_for_delete(service, options,
                                                     capabilities)
        usage = ownership.find_for_delete(facade, service, svc_conf)
        if usage is None:
            LOG.debug('No load balancer found for Service %s',
                      utils.get_res_unique_name(service))
            return

        self._release(facade, service, svc_conf, usage, options)

        if options.manage_security_groups:
            self._get_security_group_reconciler(facade, options).delete(
                service)

    def get_loadbalancer(self, service, cancel=None):
        """Returns the Service load balancer status and whether it exists."""
        options, capabilities, facade = self._start_pass(cancel)
        svc_conf = service_config.resolve_for_delete(service, options,
                                                     capabilities)
        usage = ownership.find_for_delete(facade, service, svc_conf)
        if usage is None:
            return None, False

        lb = usage.lb
        status = {'ingress': []}
        if lb.vip_port_id:
            fip = facade.get_floating_ip_by_port(lb.vip_port_id)
            address = fip.floating_ip_address if fip else lb.vip_address
            status['ingress'].append({'ip': address})
        return status, True
