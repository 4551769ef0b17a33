# Licensed under the Apache License, Version 2.0 (the "License"); you may
# not use this file except in compliance with the License. You may obtain
# a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS, WITHOUT
# WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied. See the
# License for the specific language governing permissions and limitations
# under the License.
import copy

from oslo_log import _options

from kuryr.lib import opts as lib_opts
from kuryr_octavia import config

_kuryr_octavia_opts = [
    ('octavia_defaults', config.octavia_defaults),
    (config.LB_CLASS_GROUP_PREFIX + '<name>', config.lb_class_opts),
]


def list_kuryr_octavia_opts():
    """Return a list of oslo_config options available in kuryr-octavia.

    Each element of the list is a tuple. The first element is the name of the
    group under which the list of elements in the second element will be
    registered. The load balancer class options are listed once, under a
    placeholder group name, as they are registered for every class named in
    [octavia_defaults] lb_classes.

    This function is also discoverable via the 'kuryr_octavia' entry point
    under the 'oslo.config.opts' namespace.

    :returns: a list of (group_name, opts) tuples
    """

    return ([(k, copy.deepcopy(o)) for k, o in _kuryr_octavia_opts] +
            lib_opts.list_kuryr_opts() + _options.list_opts())
