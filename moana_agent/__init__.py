"""
Moana node agent

Runs on every storage node. Responsibilities:
- Answer the control plane's probe when the node joins
- Store the server volfiles pushed for each volume
- Mount brick devices and run one supervised brick daemon per launch config
- Forward rebalance requests to the brick daemons of a volume
"""
