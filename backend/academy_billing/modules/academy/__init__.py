"""Academy operational tables read by the usage aggregator."""
