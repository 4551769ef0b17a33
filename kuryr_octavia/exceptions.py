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


class LoadBalancerError(Exception):
    pass


class InvalidConfiguration(LoadBalancerError):
    pass


class ResourceNotFound(LoadBalancerError):
    def __init__(self, resource):
        super(ResourceNotFound, self).__init__(
            "Resource not found: %r" % resource)


class MultipleResults(LoadBalancerError):
    def __init__(self, resource):
        super(MultipleResults, self).__init__(
            "Multiple resources found for %r" % resource)


class Conflict(LoadBalancerError):
    def __init__(self, message):
        super(Conflict, self).__init__("Conflict: %s" % message)


class SharingNotAllowed(LoadBalancerError):
    pass


class NotOwner(LoadBalancerError):
    """Floating IP management attempted on a load balancer not owned

    Only the owning Service may create, attach, detach or delete the floating
    IP of a load balancer. Never retried.
    """
    def __init__(self, lb_id, action):
        super(NotOwner, self).__init__(
            'Refusing to %s the floating IP of load balancer %s: the '
            'Service is not its owner' % (action, lb_id))


class ResourceNotReady(LoadBalancerError):
    def __init__(self, resource):
        self.message = "Resource not ready: %r" % resource
        super(ResourceNotReady, self).__init__(self.message)


class LoadBalancerNotReady(ResourceNotReady):
    def __init__(self, loadbalancer_id, status):
        super().__init__(
            'Loadbalancer %s is not ACTIVE, current provisioning status: '
            '%s' % (loadbalancer_id, status))


class LoadBalancerInErrorState(ResourceNotReady):
    def __init__(self, loadbalancer_id):
        super().__init__(
            'Loadbalancer %s has gone into ERROR state and was deleted, it '
            'will be created again on the next attempt' % loadbalancer_id)


class ReconcileCancelled(LoadBalancerError):
    pass


class UnreachableOctavia(LoadBalancerError):
    """Exception indicates Octavia API failure and can not be reached

    This exception is raised when the Octavia API call returns 'None' on the
    version field and we need to properly log a message informing the user
    """
    def __init__(self, message):
        super(UnreachableOctavia, self).__init__(message)


_RETRYABLE = (ResourceNotReady, UnreachableOctavia)


def is_retryable(exc):
    """Tells the caller whether the whole pass is worth running again."""
    return isinstance(exc, _RETRYABLE)
