# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics used by the API and the scheduler process.

# Ingress
inbound_events_counter = Counter('inbound_events_total', 'Inbound events by entry kind and outcome', ['source', 'outcome'])
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
webhook_routing_ambiguous_counter = Counter('webhook_routing_ambiguous_total', 'Webhook routing keys that matched more than one node', ['kind'])

# Engine
node_executions_counter = Counter('node_executions_total', 'Node handler executions', ['node_type', 'status'])
flow_sessions_counter = Counter('flow_sessions_total', 'Session state transitions', ['status'])

# Collaborators
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['provider', 'status'])
outbound_messages_counter = Counter('outbound_messages_total', 'Outbound WhatsApp messages', ['message_type', 'status'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
audit_writes_counter = Counter('audit_writes_total', 'Audit log writes', ['status'])
