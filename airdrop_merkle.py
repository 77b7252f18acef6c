#!/usr/bin/env python3
"""
Airdrop Merkle — builds the Merkle tree behind a Merkle-gated token claim
(leaf = keccak256(abi.encodePacked(address account, uint256 amount)), pairs are sorted
before hashing, an unpaired node is promoted to the next level unchanged).
Produces the merkleRoot passed to the token contract at deployment, plus a proof per claimant.
"""
import argparse, csv, json, logging, os, sys, time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Sequence, Tuple, Union

from eth_utils import is_hex_address, keccak, remove_0x_prefix

log = logging.getLogger("airdrop_merkle")

ADDRESS_LENGTH = 20
AMOUNT_BITS = 256
AMOUNT_LENGTH = AMOUNT_BITS // 8
MAX_AMOUNT = (1 << AMOUNT_BITS) - 1

HashFn = Callable[[bytes], bytes]
Hashish = Union[bytes, str]


class EncodingError(ValueError):
    """A claim record cannot be packed into the on-chain leaf layout."""


class EmptyTreeError(ValueError):
    pass


class UnknownLeafError(LookupError):
    pass


class DuplicateIdentityError(ValueError):
    """Two rows of a distribution share an address; the contract allows one claim each."""


# ---------- Leaf encoding ----------
def norm_identity(identity: Union[str, bytes]) -> bytes:
    if isinstance(identity, (bytes, bytearray)):
        raw = bytes(identity)
    elif isinstance(identity, str):
        a = identity.strip()
        if not is_hex_address(a):
            raise EncodingError(f"Invalid EVM address: {identity}")
        raw = bytes.fromhex(remove_0x_prefix(a))
    else:
        raise EncodingError(f"identity must be an address string or bytes, got {type(identity).__name__}")
    if len(raw) != ADDRESS_LENGTH:
        raise EncodingError(f"identity must be {ADDRESS_LENGTH} bytes, got {len(raw)}")
    return raw


def norm_amount(amount: Union[int, str]) -> int:
    if isinstance(amount, str):
        s = amount.strip()
        if not (s.isascii() and s.isdigit()):
            raise EncodingError(f"amount must be a non-negative integer string, got: {amount!r}")
        amount = int(s)
    # bool is an int subclass
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise EncodingError(f"amount must be an integer, got {type(amount).__name__}")
    if amount < 0 or amount > MAX_AMOUNT:
        raise EncodingError(f"amount {amount} does not fit in uint{AMOUNT_BITS}")
    return amount


@dataclass(frozen=True)
class ClaimRecord:
    """One allocation: the claimant address and the amount it may claim."""
    identity: bytes
    amount: int

    def __post_init__(self):
        object.__setattr__(self, "identity", norm_identity(self.identity))
        object.__setattr__(self, "amount", norm_amount(self.amount))

    @property
    def address(self) -> str:
        return "0x" + self.identity.hex()

    def encode(self) -> bytes:
        return self.identity + self.amount.to_bytes(AMOUNT_LENGTH, byteorder="big")


def encode_leaf(identity: Union[str, bytes], amount: Union[int, str]) -> bytes:
    """Packed (address, uint256) layout: 20 address bytes + 32-byte big-endian amount."""
    return ClaimRecord(identity, amount).encode()


def leaf_hash(identity: Union[str, bytes], amount: Union[int, str], hash_fn: HashFn = keccak) -> bytes:
    return hash_fn(encode_leaf(identity, amount))


# ---------- Tree ----------
def hash_pair(a: bytes, b: bytes, hash_fn: HashFn = keccak) -> bytes:
    if b < a:
        a, b = b, a
    return hash_fn(a + b)


def build_levels(leaves: Sequence[bytes], hash_fn: HashFn = keccak) -> List[List[bytes]]:
    if not leaves:
        raise EmptyTreeError("No leaves to build tree")
    levels = [list(leaves)]
    cur = levels[0]
    while len(cur) > 1:
        nxt = [hash_pair(cur[i], cur[i + 1], hash_fn) for i in range(0, len(cur) - 1, 2)]
        if len(cur) % 2:
            nxt.append(cur[-1])
        levels.append(nxt)
        cur = nxt
    return levels


def proof_path(levels: List[List[bytes]], pos: int) -> List[bytes]:
    """Siblings from leaf to root; levels where the node was promoted contribute nothing."""
    proof = []
    for level in levels[:-1]:
        sib = pos ^ 1
        if sib < len(level):
            proof.append(level[sib])
        pos //= 2
    return proof


def to_hash_bytes(value: Hashish) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return bytes.fromhex(remove_0x_prefix(value.strip()))
    except (AttributeError, ValueError) as e:
        raise EncodingError(f"not a hex hash: {value!r}") from e


def verify_proof(leaf: Hashish, proof: Iterable[Hashish], root: Hashish, hash_fn: HashFn = keccak) -> bool:
    h = to_hash_bytes(leaf)
    for sib in proof:
        h = hash_pair(h, to_hash_bytes(sib), hash_fn)
    return h == to_hash_bytes(root)


class ClaimTree:
    """Sorted-pair Merkle tree over a fixed list of claim records.

    Leaves are sorted before the tree is built, so the root only depends on the set of
    records. The input order is kept to look proofs up by index.
    """

    def __init__(self, records: Iterable[Union[ClaimRecord, Tuple[Union[str, bytes], Union[int, str]]]],
                 hash_fn: HashFn = keccak):
        self.hash_fn = hash_fn
        self.records: Tuple[ClaimRecord, ...] = tuple(
            r if isinstance(r, ClaimRecord) else ClaimRecord(*r) for r in records
        )
        if not self.records:
            raise EmptyTreeError("Cannot build a claim tree with no records")
        started = time.perf_counter()
        self.leaves: List[bytes] = [hash_fn(r.encode()) for r in self.records]
        self.levels = build_levels(sorted(self.leaves), hash_fn)
        self.root: bytes = self.levels[-1][0]
        self._positions: Dict[bytes, int] = {leaf: i for i, leaf in enumerate(self.levels[0])}
        log.debug("built tree: %d leaves, %d levels in %.3fs",
                  len(self.leaves), len(self.levels), time.perf_counter() - started)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def root_hex(self) -> str:
        return self.root.hex()

    def proof(self, index: int) -> List[bytes]:
        if index < 0 or index >= len(self.records):
            raise IndexError("Leaf index out of range.")
        return proof_path(self.levels, self._positions[self.leaves[index]])

    def proof_for(self, record: Union[ClaimRecord, Tuple[Union[str, bytes], Union[int, str]]]) -> List[bytes]:
        if not isinstance(record, ClaimRecord):
            record = ClaimRecord(*record)
        pos = self._positions.get(self.hash_fn(record.encode()))
        if pos is None:
            raise UnknownLeafError(f"No leaf for {record.address} / {record.amount}")
        return proof_path(self.levels, pos)

    def hex_proof(self, index: int) -> List[str]:
        return ["0x" + sib.hex() for sib in self.proof(index)]

    def verify(self, record: Union[ClaimRecord, Tuple[Union[str, bytes], Union[int, str]]],
               proof: Iterable[Hashish]) -> bool:
        # Same check the contract does: leaf rebuilt from (caller, amount).
        if not isinstance(record, ClaimRecord):
            record = ClaimRecord(*record)
        return verify_proof(self.hash_fn(record.encode()), proof, self.root, self.hash_fn)


# ---------- Distribution ----------
def build_distribution(rows: Iterable[Tuple[Union[str, bytes], Union[int, str]]]) -> dict:
    tree = ClaimTree(rows)
    claims: Dict[str, dict] = {}
    token_total = 0
    for i, rec in enumerate(tree.records):
        if rec.address in claims:
            raise DuplicateIdentityError(f"Address listed twice: {rec.address}")
        token_total += rec.amount
        claims[rec.address] = {"index": i, "amount": str(rec.amount), "proof": tree.hex_proof(i)}
    return {"merkleRoot": "0x" + tree.root_hex, "tokenTotal": str(token_total), "claims": claims}


def load_csv(path: str) -> List[Tuple[str, str]]:
    out = []
    with open(path, newline="") as f:
        rdr = csv.DictReader(f)
        if not rdr.fieldnames or "address" not in rdr.fieldnames or "amount" not in rdr.fieldnames:
            raise ValueError("CSV needs header: address,amount")
        for r in rdr:
            a = (r.get("address") or "").strip()
            v = (r.get("amount") or "").strip()
            if a and v:
                out.append((a, v))
            elif a or v:
                log.warning("skipping incomplete row %d: %r", rdr.line_num, r)
    if not out:
        raise ValueError("No valid rows in CSV")
    return out


def save_json(obj, path: str):
    with open(path, "w") as f:
        json.dump(obj, f, indent=2)


def save_claims_csv(claims: Dict[str, dict], path: str):
    with open(path, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["address", "amount", "index", "proof"])
        for addr, c in claims.items():
            w.writerow([addr, c["amount"], c["index"], json.dumps(c["proof"])])


def load_master(path: str) -> dict:
    with open(path, "r") as f:
        return json.load(f)


# ---------- CLI ----------
def cmd_sample(args) -> int:
    with open(args.out, "w", newline="") as f:
        w = csv.writer(f)
        w.writerow(["address", "amount"])
        w.writerow(["0x1111111111111111111111111111111111111111", "1000"])
        w.writerow(["0x2222222222222222222222222222222222222222", "2500"])
        w.writerow(["0x3333333333333333333333333333333333333333", "5000"])
    print(f"Sample CSV written to {args.out}")
    return 0


def cmd_build(args) -> int:
    rows = load_csv(args.csv)
    master = build_distribution(rows)
    os.makedirs(args.out_dir, exist_ok=True)
    json_path = os.path.join(args.out_dir, "merkle.json")
    csv_path = os.path.join(args.out_dir, "claims.csv")
    save_json(master, json_path)
    save_claims_csv(master["claims"], csv_path)
    print("Merkle root:", master["merkleRoot"])
    print("Token total:", master["tokenTotal"])
    print(f"Wrote {json_path} and {csv_path}")
    return 0


def cmd_proof(args) -> int:
    master = load_master(args.json)
    addr = "0x" + norm_identity(args.address).hex()
    c = master["claims"].get(addr)
    if not c:
        log.error("Address not found in claims: %s", addr)
        return 1
    print(json.dumps({"address": addr, "amount": c["amount"], "index": c["index"], "proof": c["proof"]}, indent=2))
    return 0


def cmd_verify(args) -> int:
    master = load_master(args.json)
    rec = ClaimRecord(args.address, args.amount)
    claim = master["claims"].get(rec.address)
    if not claim:
        log.error("Address not in claims: %s", rec.address)
        return 1
    if claim["amount"] != str(rec.amount):
        log.error("Amount mismatch. Expected: %s", claim["amount"])
        return 1
    ok = verify_proof(keccak(rec.encode()), claim["proof"], master["merkleRoot"])
    print("Valid proof:", ok)
    return 0 if ok else 1


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Airdrop Merkle (sorted pairs, keccak256)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("sample", help="write sample CSV")
    p.add_argument("--out", default="sample.csv")
    p.set_defaults(func=cmd_sample)

    p = sub.add_parser("build", help="build merkle.json & claims.csv from CSV")
    p.add_argument("--csv", required=True)
    p.add_argument("--out-dir", default=".")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("proof", help="print proof JSON for an address")
    p.add_argument("--json", default="merkle.json")
    p.add_argument("--address", required=True)
    p.set_defaults(func=cmd_proof)

    p = sub.add_parser("verify", help="verify a claim against merkle.json")
    p.add_argument("--json", default="merkle.json")
    p.add_argument("--address", required=True)
    p.add_argument("--amount", required=True)
    p.set_defaults(func=cmd_verify)

    args = ap.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="[%(levelname)s] %(message)s", stream=sys.stderr)
    try:
        return args.func(args)
    except (ValueError, LookupError, OSError) as e:
        log.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
