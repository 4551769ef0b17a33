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

"""Ownership and sharing of load balancers between Services.

A Service owns the load balancer named after it. Other Services may share
it by referencing its ID in their annotation, each of them is recorded by a
tag carrying its generated load balancer name.
"""

import dataclasses

from oslo_log import log as logging

from kuryr_octavia import constants as k_const
from kuryr_octavia import exceptions as k_exc
from kuryr_octavia import utils

LOG = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class LoadBalancerUsage(object):
    lb: object
    lb_name: str
    is_owner: bool
    created: bool = False


@dataclasses.dataclass(frozen=True)
class DeletePlan(object):
    need_delete: bool
    update_tag: bool
    is_shared: bool
    created_by_us: bool


def count_shared_tags(lb):
    return len([tag for tag in lb.tags or []
                if tag.startswith(k_const.SERVICE_PREFIX)])


def find_by_name(facade, service, lb_name):
    """Looks the Service load balancer up by its generated names.

    The legacy name is only tried when nothing carries the current one.
    """
    lb = facade.get_load_balancer_by_name(lb_name)
    if lb is None:
        legacy_name = utils.get_loadbalancer_legacy_name(service)
        if legacy_name:
            lb = facade.get_load_balancer_by_name(legacy_name)
    return lb


def _is_internal_lb(facade, lb):
    return facade.get_floating_ip_by_port(lb.vip_port_id) is None


def _check_sharing(facade, lb, svc_conf, max_shared_lb):
    lb_name = svc_conf.lb_name
    tags = lb.tags or []
    if not svc_conf.supports_tags:
        raise k_exc.SharingNotAllowed(
            'Shared load balancer is only supported with the tag feature '
            'in the cloud load balancer service')
    if lb_name in tags:
        return
    shared_count = count_shared_tags(lb)
    if shared_count + 1 > max_shared_lb:
        raise k_exc.SharingNotAllowed(
            'Load balancer %s already shared with %d Services' %
            (lb.id, shared_count))
    if svc_conf.internal:
        raise k_exc.SharingNotAllowed(
            'Internal Service can not share load balancer %s' % lb.id)
    if _is_internal_lb(facade, lb):
        raise k_exc.SharingNotAllowed(
            'Internal load balancer %s can not be shared' % lb.id)


def find_for_ensure(facade, service, svc_conf, max_shared_lb):
    """Returns the LoadBalancerUsage of the Service or None.

    None means the load balancer does not exist yet and the Service is going
    to own the one created for it.

    :raises SharingNotAllowed: when the Service can not use the referenced
                               load balancer
    :raises MultipleResults: when the generated name is ambiguous
    """
    lb_name = svc_conf.lb_name
    if svc_conf.lb_id:
        lb = facade.get_load_balancer(svc_conf.lb_id)
        if lb is None:
            raise k_exc.ResourceNotFound('load balancer %s' % svc_conf.lb_id)
        is_owner = lb.name == lb_name
        if not is_owner:
            _check_sharing(facade, lb, svc_conf, max_shared_lb)
        return LoadBalancerUsage(lb, lb_name, is_owner)

    lb = find_by_name(facade, service, lb_name)
    if lb is None:
        return None
    # NOTE: a Service created before sharing was supported.
    return LoadBalancerUsage(lb, lb_name, True)


def find_for_delete(facade, service, svc_conf):
    lb_name = svc_conf.lb_name
    if svc_conf.lb_id:
        lb = facade.get_load_balancer(svc_conf.lb_id)
    else:
        # The Service creation may have failed before the ID annotation got
        # stored.
        lb = find_by_name(facade, service, lb_name)
    if lb is None:
        return None
    return LoadBalancerUsage(lb, lb_name, lb.name == lb_name)


def plan_delete(lb, lb_name, tags_supported):
    created_by_us = (lb.name or '').startswith(k_const.SERVICE_PREFIX)
    update_tag = False
    is_shared = False
    if tags_supported:
        for tag in lb.tags or []:
            if tag == lb_name:
                update_tag = True
            elif tag.startswith(k_const.SERVICE_PREFIX):
                is_shared = True
    plan = DeletePlan(need_delete=created_by_us and not is_shared,
                      update_tag=update_tag, is_shared=is_shared,
                      created_by_us=created_by_us)
    LOG.debug('Delete plan of load balancer %(lb)s: %(plan)s',
              {'lb': lb.id, 'plan': plan})
    return plan


def add_tag(facade, lb, lb_name):
    tags = list(lb.tags or [])
    if lb_name in tags:
        return lb
    tags.append(lb_name)
    LOG.info('Updating load balancer %(lb)s tags to %(tags)s',
             {'lb': lb.id, 'tags': tags})
    return facade.update_load_balancer_tags(lb.id, tags)


def remove_tag(facade, lb, lb_name):
    tags = [tag for tag in lb.tags or [] if tag != lb_name]
    # An empty list does not trigger the tags update.
    if not tags:
        tags = ['']
    LOG.info('Updating load balancer %(lb)s tags to %(tags)s',
             {'lb': lb.id, 'tags': tags})
    return facade.update_load_balancer_tags(lb.id, tags)
