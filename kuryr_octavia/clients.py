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

from keystoneauth1 import session as k_session
from kuryr.lib import utils
from openstack import connection

from kuryr_octavia import config

_clients = {}
_OPENSTACKSDK = 'openstacksdk'


def get_network_client():
    return _clients[_OPENSTACKSDK].network


def get_loadbalancer_client():
    return _clients[_OPENSTACKSDK].load_balancer


def get_compute_client():
    return _clients[_OPENSTACKSDK].compute


def get_keymanager_client():
    return _clients[_OPENSTACKSDK].key_manager


def setup_clients():
    setup_openstacksdk()


def setup_openstacksdk():
    auth_plugin = utils.get_auth_plugin('neutron')
    session = utils.get_keystone_session('neutron', auth_plugin)

    # NOTE(mdulko): To get rid of warnings about connection pool being full
    #               we need to "tweak" the keystoneauth's adapters increasing
    #               the maximum pool size.
    for scheme in list(session.session.adapters):
        session.session.mount(scheme, k_session.TCPKeepAliveAdapter(
            pool_maxsize=1000))

    conn = connection.Connection(
        session=session,
        region_name=getattr(config.CONF.neutron, 'region_name', None))
    _clients[_OPENSTACKSDK] = conn
