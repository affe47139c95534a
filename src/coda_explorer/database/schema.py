"""
DDL for the chain mirror.

Child tables are keyed by ``(blockstatehash, index)`` so re-exporting a
block is a no-op under ``ON CONFLICT DO NOTHING``.
"""

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS blocks (
        statehash           TEXT PRIMARY KEY,
        canonical           BOOLEAN NOT NULL DEFAULT FALSE,
        previousstatehash   TEXT NOT NULL,
        snarkedledgerhash   TEXT NOT NULL DEFAULT '',
        stagedledgerhash    TEXT NOT NULL DEFAULT '',
        coinbase            BIGINT NOT NULL DEFAULT 0,
        creator             TEXT NOT NULL,
        slot                BIGINT NOT NULL,
        height              BIGINT NOT NULL,
        epoch               BIGINT NOT NULL,
        ts                  TIMESTAMPTZ NOT NULL,
        totalcurrency       NUMERIC NOT NULL DEFAULT 0,
        usercommandscount   INTEGER NOT NULL DEFAULT 0,
        snarkjobscount      INTEGER NOT NULL DEFAULT 0,
        feetransfercount    INTEGER NOT NULL DEFAULT 0
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_blocks_height ON blocks(height DESC);",
    "CREATE INDEX IF NOT EXISTS idx_blocks_creator ON blocks(creator);",
    "CREATE INDEX IF NOT EXISTS idx_blocks_ts ON blocks(ts);",
    """
    CREATE TABLE IF NOT EXISTS userjobs (
        blockstatehash  TEXT NOT NULL REFERENCES blocks(statehash),
        index           INTEGER NOT NULL,
        id              TEXT NOT NULL,
        sender          TEXT NOT NULL,
        recipient       TEXT NOT NULL,
        memo            TEXT NOT NULL DEFAULT '',
        fee             BIGINT NOT NULL DEFAULT 0,
        amount          BIGINT NOT NULL DEFAULT 0,
        nonce           BIGINT NOT NULL DEFAULT 0,
        delegation      BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (blockstatehash, index)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_userjobs_sender ON userjobs(sender);",
    "CREATE INDEX IF NOT EXISTS idx_userjobs_recipient ON userjobs(recipient);",
    """
    CREATE TABLE IF NOT EXISTS snarkjobs (
        blockstatehash  TEXT NOT NULL REFERENCES blocks(statehash),
        index           INTEGER NOT NULL,
        jobids          BIGINT[] NOT NULL DEFAULT '{}',
        prover          TEXT NOT NULL,
        fee             BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (blockstatehash, index)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_snarkjobs_prover ON snarkjobs(prover);",
    """
    CREATE TABLE IF NOT EXISTS feetransfers (
        blockstatehash  TEXT NOT NULL REFERENCES blocks(statehash),
        index           INTEGER NOT NULL,
        recipient       TEXT NOT NULL,
        fee             BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (blockstatehash, index)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        publickey           TEXT PRIMARY KEY,
        balance             NUMERIC NOT NULL DEFAULT 0,
        nonce               BIGINT NOT NULL DEFAULT 0,
        receiptchainhash    TEXT NOT NULL DEFAULT '',
        delegate            TEXT NOT NULL DEFAULT '',
        votingfor           TEXT NOT NULL DEFAULT '',
        txsent              INTEGER NOT NULL DEFAULT 0,
        txreceived          INTEGER NOT NULL DEFAULT 0,
        blocksproposed      INTEGER NOT NULL DEFAULT 0,
        snarkjobs           INTEGER NOT NULL DEFAULT 0,
        firstseen           TIMESTAMPTZ,
        lastseen            TIMESTAMPTZ
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS daemonstatus (
        ts                          TIMESTAMPTZ PRIMARY KEY,
        blockchainlength            BIGINT NOT NULL DEFAULT 0,
        commitid                    TEXT NOT NULL DEFAULT '',
        epochduration               BIGINT NOT NULL DEFAULT 0,
        slotduration                BIGINT NOT NULL DEFAULT 0,
        slotsperepoch               BIGINT NOT NULL DEFAULT 0,
        consensusmechanism          TEXT NOT NULL DEFAULT '',
        highestblocklengthreceived  BIGINT NOT NULL DEFAULT 0,
        ledgermerkleroot            TEXT NOT NULL DEFAULT '',
        numaccounts                 BIGINT NOT NULL DEFAULT 0,
        peers                       TEXT[] NOT NULL DEFAULT '{}',
        peerscount                  INTEGER NOT NULL DEFAULT 0,
        statehash                   TEXT NOT NULL DEFAULT '',
        syncstatus                  TEXT NOT NULL DEFAULT '',
        uptime                      BIGINT NOT NULL DEFAULT 0
    );
    """,
]
