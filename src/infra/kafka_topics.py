TOPICS = {
    "runlist_events": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
    "buy_box_matches": {
        "partitions": 12,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
}
