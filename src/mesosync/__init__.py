__version__ = '0.1.0'

from mesosync.client import Host as Host
from mesosync.client import LeaderLocator as LeaderLocator
from mesosync.client import Mirror as Mirror
from mesosync.client import MirrorConfig as MirrorConfig
from mesosync.client import decode_ports as decode_ports
from mesosync.client import parse_master_info as parse_master_info
from mesosync.registry import ConsulRegistry as ConsulRegistry
from mesosync.registry import Registry as Registry
from mesosync.registry import build_registry as build_registry
