"""
Typed-data signing for OneBalance chain operations
"""

import copy
import logging
from typing import Any, Dict

from eth_account import Account

logger = logging.getLogger(__name__)


def _coerce(type_name: str, value: Any, types: Dict) -> Any:
    """JSON carries uint/int values as decimal or hex strings"""
    if type_name.endswith(']'):
        inner = type_name[:type_name.rindex('[')]
        return [_coerce(inner, item, types) for item in value]
    if type_name in types:
        return _coerce_struct(type_name, value, types)
    if (type_name.startswith('uint') or type_name.startswith('int')) and isinstance(value, str):
        return int(value, 16) if value.startswith('0x') else int(value)
    return value


def _coerce_struct(type_name: str, data: Dict, types: Dict) -> Dict:
    return {
        member['name']: _coerce(member['type'], data[member['name']], types)
        for member in types[type_name]
        if member['name'] in data
    }


class OperationSigner:
    """sign(payload) -> signature for the bot's session key"""

    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self.account.address

    def sign_typed_data(self, typed_data: Dict) -> str:
        types = {k: v for k, v in typed_data['types'].items() if k != 'EIP712Domain'}
        primary_type = typed_data.get('primaryType')
        message = typed_data['message']
        if primary_type:
            message = _coerce_struct(primary_type, message, types)
            # eth-account derives the primary type from the type graph
            types = self._reachable(primary_type, types)

        domain = dict(typed_data.get('domain') or {})
        if isinstance(domain.get('chainId'), str):
            domain['chainId'] = _coerce('uint256', domain['chainId'], {})

        signed = Account.sign_typed_data(
            self.account.key,
            domain_data=domain,
            message_types=types,
            message_data=message
        )
        return '0x' + signed.signature.hex().removeprefix('0x')

    def sign_operation(self, chain_operation: Dict) -> Dict:
        """Return a copy of the chain operation with userOp.signature set"""
        signed = copy.deepcopy(chain_operation)
        signed['userOp']['signature'] = self.sign_typed_data(chain_operation['typedDataToSign'])
        return signed

    @staticmethod
    def _reachable(primary_type: str, types: Dict) -> Dict:
        found = {}
        pending = [primary_type]
        while pending:
            name = pending.pop()
            if name in found or name not in types:
                continue
            found[name] = types[name]
            for member in types[name]:
                pending.append(member['type'].split('[')[0])
        return found
