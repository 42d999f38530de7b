"""PeerVault Meta information.
   PeerVault orchestrates encrypted, peer-replicated record vaults.
"""
__title__ = 'peervault'
__description__ = (
   'Orchestration core for local, encrypted and peer-replicated '
   'record vaults.'
)
__version__ = '0.3.0'
__license__ = 'Apache-2.0'
