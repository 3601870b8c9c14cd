import pytest

from casebook.loadbalancer import (
    REQUEST_TYPE,
    NoAvailableNodesError,
    RWWeightClient,
    ServiceNode,
    WeightedRoundRobinLoadBalancer,
)


@pytest.fixture
def client():
    c = RWWeightClient(WeightedRoundRobinLoadBalancer(), WeightedRoundRobinLoadBalancer())
    c.add_write_node(ServiceNode(url="w1.com", weight=25))
    c.add_write_node(ServiceNode(url="w2.com", weight=20))
    c.add_write_node(ServiceNode(url="w3.com", weight=40))
    c.add_read_node(ServiceNode(url="r1.com", weight=20))
    c.add_read_node(ServiceNode(url="r2.com", weight=40))
    c.add_read_node(ServiceNode(url="r3.com", weight=80))
    return c


def test_read_nodes_sequence(client):
    urls = [client.get({}).url for _ in range(10)]
    assert urls == [
        "r3.com", "r2.com", "r3.com", "r1.com", "r3.com",
        "r2.com", "r3.com", "r3.com", "r2.com", "r3.com",
    ]


def test_read_then_write_nodes_sequence(client):
    reads = [client.get() for _ in range(10)]
    assert reads[0] == ServiceNode(url="r3.com", weight=80)
    writes = [client.get({REQUEST_TYPE: 1}) for _ in range(10)]
    assert [n.url for n in writes] == [
        "w3.com", "w1.com", "w2.com", "w3.com", "w1.com",
        "w3.com", "w2.com", "w3.com", "w1.com", "w3.com",
    ]
    assert writes[1] == ServiceNode(url="w1.com", weight=25)


@pytest.mark.parametrize("ctx", [None, {}, {REQUEST_TYPE: "1"}, {REQUEST_TYPE: 2}])
def test_non_write_contexts_use_read_pool(client, ctx):
    assert client.get(ctx).url.startswith("r")


def test_empty_pool_raises():
    c = RWWeightClient(WeightedRoundRobinLoadBalancer(), WeightedRoundRobinLoadBalancer())
    with pytest.raises(NoAvailableNodesError):
        c.get()
    with pytest.raises(NoAvailableNodesError):
        c.get({REQUEST_TYPE: 1})


def test_zero_total_weight_raises():
    lb = WeightedRoundRobinLoadBalancer()
    with pytest.raises(NoAvailableNodesError):
        lb.select([ServiceNode("a", 0), ServiceNode("b", 0)])


def test_distribution_follows_weights():
    lb = WeightedRoundRobinLoadBalancer()
    nodes = [ServiceNode("a", 1), ServiceNode("b", 2), ServiceNode("c", 3)]
    picks = [lb.select(nodes).url for _ in range(60)]
    assert picks.count("a") == 10
    assert picks.count("b") == 20
    assert picks.count("c") == 30