"""
End-to-end demo: deploy an account, delegate to a session key, relay requests.
"""

import logging

from eth_account import Account

from warden import AccountFactory, Call, LocalChain, LocalRelayer, Request, SignatureMode, sign_request
from warden.errors import LimitReachedError, TargetNotWhitelistedError


def main():
    logging.basicConfig(level=logging.INFO, format="   %(name)s: %(message)s")
    print("🚀 Warden demo: session keys on a local chain")
    print("=" * 50)
    print()

    chain = LocalChain()
    relayer = LocalRelayer(chain)
    factory = AccountFactory(chain, relayer.address)

    # 1. Deploy
    print("1️⃣  Deploying account...")
    owner = Account.create()
    predicted = factory.get_address(owner.address, 0)
    address = factory.create_account(owner.address, 0)
    assert address == predicted
    account = factory.get_account(address)
    chain.mint(address, 10**18)
    print(f"   ✅ Account {address} (predicted before deployment)")
    print()

    # 2. Delegate
    print("2️⃣  Registering a session key: 1 use, one allowed recipient...")
    agent = Account.create()
    shop = Account.create().address
    account.register_session_key(
        owner.address,
        agent.address,
        chain.timestamp,
        chain.timestamp + 3600,
        limit=1,
        whitelist=[shop],
    )
    print(f"   ✅ Agent key {agent.address}")
    print()

    # 3. Spend
    print("3️⃣  Agent pays the shop...")
    request = Request.single(address, relayer.get_nonce(address), shop, 10**15)
    receipt = relayer.handle(sign_request(request, agent.key, chain.chain_id))
    print(f"   ✅ success={receipt.success} shop balance={chain.balance_of(shop)}")
    print()

    # 4. Denials
    print("4️⃣  Agent tries to spend again (budget is used up)...")
    for target in (shop, Account.create().address):
        request = Request.single(address, relayer.get_nonce(address), target, 10**15)
        try:
            relayer.handle(sign_request(request, agent.key, chain.chain_id, SignatureMode.PERSONAL))
        except (LimitReachedError, TargetNotWhitelistedError) as e:
            print(f"   ❌ denied: {e}")
    print()

    # 5. Owner batch
    print("5️⃣  Owner sends an atomic batch...")
    calls = [Call(shop, 1), Call(agent.address, 1)]
    request = Request.batch(address, relayer.get_nonce(address), calls)
    receipt = relayer.handle(sign_request(request, owner.key, chain.chain_id))
    print(f"   ✅ success={receipt.success} nonce={relayer.get_nonce(address)}")
    print()

    print("🎉 Done")


if __name__ == "__main__":
    main()
