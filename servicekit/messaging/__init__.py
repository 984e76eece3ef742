"""Messages, publisher and consumer interfaces, and Kafka-style implementations over pluggable transports."""