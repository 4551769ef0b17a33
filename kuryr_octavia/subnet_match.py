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

"""Selection of subnets by name pattern and tags.

A name spec is a glob (``public-*``) or, with a leading ``~``, a regular
expression that has to match the whole name. A leading ``!`` negates it.

A tag spec is a comma separated list of tags matching subnets carrying any of
them. A leading ``&`` requires all of them, a leading ``!`` negates the
result, and both can be combined as ``!&``.

Both specs have to match when both are given.
"""

import fnmatch
import re

from oslo_log import log as logging

from kuryr_octavia import exceptions as k_exc

LOG = logging.getLogger(__name__)


def _split_tags(tags):
    return [tag.strip() for tag in tags.split(',')]


class _NameMatcher(object):
    def __init__(self, spec):
        self.negate = spec.startswith('!')
        if self.negate:
            spec = spec[1:]
        if spec.startswith('~'):
            pattern = spec[1:]
        else:
            pattern = fnmatch.translate(spec)
        try:
            self._regex = re.compile(pattern)
        except re.error as e:
            raise k_exc.InvalidConfiguration(
                'Invalid subnet name pattern %r: %s' % (spec, e))

    def __call__(self, subnet):
        return (self._regex.fullmatch(subnet.name or '') is not None) != \
            self.negate


class _TagMatcher(object):
    def __init__(self, spec):
        self.negate = spec.startswith('!')
        if self.negate:
            spec = spec[1:]
        self.all = spec.startswith('&')
        if self.all:
            spec = spec[1:]
        self.tags = _split_tags(spec)

    def __call__(self, subnet):
        present = set(subnet.tags or [])
        if self.all:
            found = all(tag in present for tag in self.tags)
        else:
            found = any(tag in present for tag in self.tags)
        return found != self.negate

    def list_filters(self):
        """Translates the predicate into Neutron tag list filters."""
        tags = ','.join(self.tags)
        if self.all and self.negate:
            return {'not_any_tags': tags}
        if self.all:
            return {'tags': tags}
        if self.negate:
            return {'not_tags': tags}
        return {'any_tags': tags}


class SubnetSpec(object):
    """Public subnet selection of a Service.

    Either an explicit subnet ID, or a name and/or tag matcher.
    """

    def __init__(self, subnet_id='', subnet='', subnet_tags=''):
        self.subnet_id = subnet_id or ''
        self.subnet = subnet or ''
        self.subnet_tags = subnet_tags or ''
        self._name_matcher = (_NameMatcher(self.subnet)
                              if self.subnet else None)
        self._tag_matcher = (_TagMatcher(self.subnet_tags)
                             if self.subnet_tags else None)

    def __repr__(self):
        if self.subnet_id:
            return 'subnet id %s' % self.subnet_id
        parts = []
        if self.subnet:
            parts.append('subnet %r' % self.subnet)
        if self.subnet_tags:
            parts.append('subnet tags %r' % self.subnet_tags)
        return ' and '.join(parts) or 'any subnet'

    def __eq__(self, other):
        if not isinstance(other, SubnetSpec):
            return NotImplemented
        return ((self.subnet_id, self.subnet, self.subnet_tags) ==
                (other.subnet_id, other.subnet, other.subnet_tags))

    def __hash__(self):
        return hash((self.subnet_id, self.subnet, self.subnet_tags))

    def configured(self):
        return bool(self.subnet_id or self.subnet or self.subnet_tags)

    def matcher_configured(self):
        return not self.subnet_id and bool(self.subnet or self.subnet_tags)

    def matches(self, subnet):
        if self._name_matcher and not self._name_matcher(subnet):
            return False
        if self._tag_matcher and not self._tag_matcher(subnet):
            return False
        return True

    def list_filters(self):
        if self._tag_matcher:
            return self._tag_matcher.list_filters()
        return {}

    def list_subnets_for_network(self, client, network_id):
        """Lists the subnets of network_id matching this spec.

        Tag predicates are pushed down to the Neutron query, the name is
        matched here.
        """
        filters = self.list_filters()
        LOG.debug('Listing subnets of network %(net)s with filters '
                  '%(filters)s', {'net': network_id, 'filters': filters})
        return [subnet for subnet in client.subnets(network_id=network_id,
                                                    **filters)
                if self.matches(subnet)]
