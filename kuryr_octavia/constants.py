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

K8S_ANNOTATION_PREFIX = 'loadbalancer.openstack.org'

ANNOTATION_LB_ID = K8S_ANNOTATION_PREFIX + '/load-balancer-id'
ANNOTATION_LB_CLASS = K8S_ANNOTATION_PREFIX + '/class'
ANNOTATION_CONN_LIMIT = K8S_ANNOTATION_PREFIX + '/connection-limit'
ANNOTATION_FLOATING_NETWORK_ID = (K8S_ANNOTATION_PREFIX +
                                  '/floating-network-id')
ANNOTATION_FLOATING_SUBNET = K8S_ANNOTATION_PREFIX + '/floating-subnet'
ANNOTATION_FLOATING_SUBNET_ID = K8S_ANNOTATION_PREFIX + '/floating-subnet-id'
ANNOTATION_FLOATING_SUBNET_TAGS = (K8S_ANNOTATION_PREFIX +
                                   '/floating-subnet-tags')
ANNOTATION_KEEP_FLOATING_IP = K8S_ANNOTATION_PREFIX + '/keep-floatingip'
ANNOTATION_PORT_ID = K8S_ANNOTATION_PREFIX + '/port-id'
ANNOTATION_PROXY_PROTOCOL = K8S_ANNOTATION_PREFIX + '/proxy-protocol'
ANNOTATION_X_FORWARDED_FOR = K8S_ANNOTATION_PREFIX + '/x-forwarded-for'
ANNOTATION_SUBNET_ID = K8S_ANNOTATION_PREFIX + '/subnet-id'
ANNOTATION_NETWORK_ID = K8S_ANNOTATION_PREFIX + '/network-id'
ANNOTATION_MEMBER_SUBNET_ID = K8S_ANNOTATION_PREFIX + '/member-subnet-id'
ANNOTATION_TIMEOUT_CLIENT_DATA = (K8S_ANNOTATION_PREFIX +
                                  '/timeout-client-data')
ANNOTATION_TIMEOUT_MEMBER_CONNECT = (K8S_ANNOTATION_PREFIX +
                                     '/timeout-member-connect')
ANNOTATION_TIMEOUT_MEMBER_DATA = (K8S_ANNOTATION_PREFIX +
                                  '/timeout-member-data')
ANNOTATION_TIMEOUT_TCP_INSPECT = (K8S_ANNOTATION_PREFIX +
                                  '/timeout-tcp-inspect')
ANNOTATION_FLAVOR_ID = K8S_ANNOTATION_PREFIX + '/flavor-id'
ANNOTATION_AVAILABILITY_ZONE = K8S_ANNOTATION_PREFIX + '/availability-zone'
ANNOTATION_ENABLE_HEALTH_MONITOR = (K8S_ANNOTATION_PREFIX +
                                    '/enable-health-monitor')
ANNOTATION_HEALTH_MONITOR_DELAY = (K8S_ANNOTATION_PREFIX +
                                   '/health-monitor-delay')
ANNOTATION_HEALTH_MONITOR_TIMEOUT = (K8S_ANNOTATION_PREFIX +
                                     '/health-monitor-timeout')
ANNOTATION_HEALTH_MONITOR_MAX_RETRIES = (K8S_ANNOTATION_PREFIX +
                                         '/health-monitor-max-retries')
ANNOTATION_HEALTH_MONITOR_MAX_RETRIES_DOWN = (
    K8S_ANNOTATION_PREFIX + '/health-monitor-max-retries-down')
ANNOTATION_HOSTNAME = K8S_ANNOTATION_PREFIX + '/hostname'
ANNOTATION_TLS_CONTAINER_REF = (K8S_ANNOTATION_PREFIX +
                                '/default-tls-container-ref')
ANNOTATION_NODE_SELECTOR = K8S_ANNOTATION_PREFIX + '/node-selector'
ANNOTATION_INTERNAL_LB = ('service.beta.kubernetes.io/'
                          'openstack-internal-load-balancer')
ANNOTATION_SOURCE_RANGES = ('service.beta.kubernetes.io/'
                            'load-balancer-source-ranges')

K8S_EXTERNAL_TRAFFIC_POLICY_LOCAL = 'Local'
K8S_SESSION_AFFINITY_CLIENT_IP = 'ClientIP'
K8S_NODE_INTERNAL_IP = 'InternalIP'
K8S_NODE_EXTERNAL_IP = 'ExternalIP'
IPv4 = 'IPv4'
IPv6 = 'IPv6'

# Resources created by this service carry this prefix in their name, and the
# same string is used as the Service tag on shared load balancers.
SERVICE_PREFIX = 'kube_service_'
# Floating IPs allocated by this service are recognized by this phrase in
# their description.
FIP_DESCRIPTION_PHRASE = 'Floating IP for Kubernetes external service'
FIP_DESCRIPTION = (FIP_DESCRIPTION_PHRASE +
                   ' %(service)s from cluster %(cluster)s')
LB_DESCRIPTION = 'Kubernetes external service %(service)s from cluster ' \
                 '%(cluster)s'
SG_DESCRIPTION = 'Security Group for %(service)s Service LoadBalancer in ' \
                 'cluster %(cluster)s'
MAX_NAME_LENGTH = 255
LEGACY_NAME_LENGTH = 32

PROVISIONING_STATUS_ACTIVE = 'ACTIVE'
PROVISIONING_STATUS_ERROR = 'ERROR'
PROVISIONING_STATUS_DELETED = 'DELETED'
PROVISIONING_STATUS_PENDING_DELETE = 'PENDING_DELETE'

LB_PROTOCOL_TCP = 'TCP'
LB_PROTOCOL_UDP = 'UDP'
LB_PROTOCOL_HTTP = 'HTTP'
LB_PROTOCOL_TERMINATED_HTTPS = 'TERMINATED_HTTPS'
LB_PROTOCOL_PROXY = 'PROXY'
LB_PROTOCOL_PROXYV2 = 'PROXYV2'

HEALTH_MONITOR_UDP_CONNECT = 'UDP-CONNECT'
HEALTH_MONITOR_HTTP = 'HTTP'
HEALTH_MONITOR_HTTP_METHOD = 'GET'
HEALTH_MONITOR_URL_PATH = '/healthz'
HEALTH_MONITOR_EXPECTED_CODES = '200'

SESSION_PERSISTENCE_SOURCE_IP = 'SOURCE_IP'
X_FORWARDED_FOR_HEADER = 'X-Forwarded-For'

OVN_PROVIDER = 'ovn'

DEFAULT_CONN_LIMIT = -1
DEFAULT_TIMEOUT_CLIENT_DATA = 50000
DEFAULT_TIMEOUT_MEMBER_CONNECT = 5000
DEFAULT_TIMEOUT_MEMBER_DATA = 50000
DEFAULT_TIMEOUT_TCP_INSPECT = 0
DEFAULT_SOURCE_RANGE_IPV4 = '0.0.0.0/0'
DEFAULT_SOURCE_RANGE_IPV6 = '::/0'

SG_RULE_DIRECTION_INGRESS = 'ingress'
SG_ETHERTYPE_IPV4 = 'IPv4'
SG_ETHERTYPE_IPV6 = 'IPv6'
