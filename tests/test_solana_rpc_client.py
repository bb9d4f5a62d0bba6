import asyncio
import json

import httpx
import pytest

from clients.solana_rpc_client import (
    BlockReward,
    ClusterNodeInfo,
    RPCMalformedResponse,
    RPCNodeRejected,
    RPCTimeout,
    RPCTransportError,
    SolanaRPCClient,
    call_with_retry,
)


def _client(handler):
    return SolanaRPCClient(url="http://node:8899", timeout=1.0, transport=httpx.MockTransport(handler))


def _rpc_result(result):
    def handler(request):
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return handler


def test_get_epoch_info_parses_fields():
    client = _client(_rpc_result({
        "epoch": 512, "slotIndex": 1000, "slotsInEpoch": 432000,
        "absoluteSlot": 221185000, "blockHeight": 200000000, "transactionCount": 123
    }))

    info = asyncio.run(client.get_epoch_info())

    assert info.epoch == 512
    assert info.first_slot == 221184000
    assert info.transaction_count == 123


def test_get_vote_accounts_flags_delinquent_list():
    client = _client(_rpc_result({
        "current": [{
            "nodePubkey": "N1", "votePubkey": "V1", "activatedStake": 5, "commission": 7,
            "lastVote": 100, "rootSlot": 68, "epochCredits": [[9, 100, 50], [10, 160, 100]]
        }],
        "delinquent": [{
            "nodePubkey": "N2", "votePubkey": "V2", "activatedStake": 1, "commission": 100,
            "lastVote": 3, "rootSlot": None, "epochCredits": []
        }]
    }))

    accounts = asyncio.run(client.get_vote_accounts())

    assert [(a.node_pubkey, a.delinquent) for a in accounts] == [("N1", False), ("N2", True)]
    assert accounts[0].epoch_credits == ((9, 100, 50), (10, 160, 100))
    assert accounts[1].root_slot == 0


def test_get_block_production_reads_range_and_counts():
    client = _client(_rpc_result({
        "context": {"slot": 1200},
        "value": {"byIdentity": {"N1": [4, 3]}, "range": {"firstSlot": 1000, "lastSlot": 1200}}
    }))

    production = asyncio.run(client.get_block_production())

    assert production.first_slot == 1000
    assert production.by_identity == {"N1": (4, 3)}


def test_get_blocks_sends_inclusive_range():
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append((body["method"], body["params"]))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": [1002, 1005]})

    client = _client(handler)

    assert asyncio.run(client.get_blocks(1000, 1020)) == [1002, 1005]
    assert asyncio.run(client.get_blocks(1000)) == [1002, 1005]
    assert seen == [("getBlocks", [1000, 1020]), ("getBlocks", [1000])]


def test_get_block_rewards_parses_reward_list():
    client = _client(_rpc_result({
        "blockhash": "abc", "parentSlot": 1001,
        "rewards": [
            {"pubkey": "Vote1", "lamports": 5000, "postBalance": 1000005000, "rewardType": "Voting", "commission": 10},
            {"pubkey": "Stake1", "lamports": 900, "postBalance": 2000900, "rewardType": "Staking"},
        ]
    }))

    rewards = asyncio.run(client.get_block_rewards(1002))

    assert rewards == [
        BlockReward("Vote1", 5000, 1000005000, "Voting", 10),
        BlockReward("Stake1", 900, 2000900, "Staking", None),
    ]


def test_skipped_block_is_rejected():
    with pytest.raises(RPCNodeRejected):
        asyncio.run(_client(_rpc_result(None)).get_block_rewards(1003))


def test_jsonrpc_error_is_node_rejected():
    def handler(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                         "error": {"code": -32009, "message": "slot skipped"}})

    with pytest.raises(RPCNodeRejected) as excinfo:
        asyncio.run(_client(handler).get_slot())

    assert excinfo.value.code == -32009
    assert not excinfo.value.transient


def test_service_unavailable_is_transient():
    with pytest.raises(RPCTransportError) as excinfo:
        asyncio.run(_client(lambda request: httpx.Response(503)).get_slot())
    assert excinfo.value.transient


def test_non_json_body_is_malformed():
    with pytest.raises(RPCMalformedResponse):
        asyncio.run(_client(lambda request: httpx.Response(200, text="<html>")).get_slot())


def test_wrong_result_type_is_malformed():
    with pytest.raises(RPCMalformedResponse):
        asyncio.run(_client(_rpc_result("not a slot")).get_slot())


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(RPCTimeout) as excinfo:
        asyncio.run(_client(handler).get_slot())
    assert excinfo.value.transient


def test_missing_leader_schedule_is_rejected():
    with pytest.raises(RPCNodeRejected):
        asyncio.run(_client(_rpc_result(None)).get_leader_schedule())


def test_call_with_retry_retries_transient_errors():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RPCTransportError("getSlot", "connection reset")
        return 42

    assert asyncio.run(call_with_retry(flaky, max_retries=2, backoff=0)) == 42
    assert len(attempts) == 3


def test_call_with_retry_gives_up_after_bounded_attempts():
    attempts = []

    async def down():
        attempts.append(1)
        raise RPCTimeout("getSlot", "timed out")

    with pytest.raises(RPCTimeout):
        asyncio.run(call_with_retry(down, max_retries=1, backoff=0))
    assert len(attempts) == 2


def test_call_with_retry_does_not_retry_permanent_errors():
    attempts = []

    async def broken():
        attempts.append(1)
        raise RPCMalformedResponse("getSlot", "garbage")

    with pytest.raises(RPCMalformedResponse):
        asyncio.run(call_with_retry(broken, max_retries=3, backoff=0))
    assert len(attempts) == 1


@pytest.mark.parametrize("gossip,expected", [
    ("1.2.3.4:8001", "1.2.3.4"),
    ("[2001:db8::1]:8001", "2001:db8::1"),
    (None, None),
])
def test_gossip_ip(gossip, expected):
    assert ClusterNodeInfo("N", gossip).gossip_ip == expected
