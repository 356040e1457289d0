"""
Message Queue — Priority-partitioned ticket intake.

- Producers PUBLISH tickets with a priority attribute
- Each priority tier has its own filtered subscription
- The consumer PULLS per tier, tracks ack handles and acknowledges
  when the ticket is closed
- Supports Redis Streams (production) and an in-memory broker (dev)
"""
