"""
Sends platform orders to Bling as sales (POST /vendas).

An order is validated locally first (address, CPF/CNPJ, item references) so
Bling never sees a payload it would reject for missing data. The outcome is
written back under `order.metadata["bling"]` and mirrored in the
`bling_synced_orders` table, which also keeps two syncs of the same order from
running at once.

The reverse direction is a poll: `pull_order_statuses` copies the Bling sale
situation back onto open orders when `orders.receive_from_bling` is on.
"""
import logging
import re
from datetime import date, datetime

from config_store import ConfigRepository
from documents import is_valid_cnpj, is_valid_cpf, sanitize_document
from errors import BlingAPIError, ConfigurationError, NotFoundError, OrderValidationError
from models import utcnow

logger = logging.getLogger(__name__)

ORDER_RELATIONS = ['items', 'shipping_address', 'billing_address', 'shipping_methods', 'transactions']
DOCUMENT_KEYS = ('document', 'cpf', 'cnpj')
ITEM_REFERENCE_KEYS = ('bling_external_id', 'external_id', 'codigo', 'sku')
HOUSE_NUMBER = re.compile(r'(\d+)')
LEADING_NUMBER = re.compile(r'^\s*[-+]?(\d+(\.\d*)?|\.\d+)')

# Bling sale situations that close an order on the platform side
SALE_DELIVERED = 6
SALE_CANCELED = 9
OPEN_ORDER_STATUSES = ['pending', 'requires_action']
STATUS_PULL_BATCH = 50
STATUS_PULL_DISABLED_WARNING = "Recebimento de status de pedidos do Bling está desativado nas preferências."


def pick_string(*values):
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_present(*values):
    for value in values:
        if value is not None:
            return value
    return None


def safe_number(value):
    """Best-effort float: None, garbage and NaN all become 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return 0 if value != value else value
    if isinstance(value, str):
        match = LEADING_NUMBER.match(value.replace(',', '.'))
        return float(match.group(0)) if match else 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return 0 if number != number else number


def _metadata(obj):
    metadata = (obj or {}).get('metadata')
    return metadata if isinstance(metadata, dict) else {}


def _iso_date(value):
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and len(value) >= 10:
        return value[:10]
    return utcnow().date().isoformat()


def strip_none(data):
    return {k: v for k, v in data.items() if v is not None}


def extract_document(order, address):
    billing = order.get('billing_address')
    sources = [_metadata(address), _metadata(billing), _metadata(order)]
    for metadata in sources:
        document = pick_string(*(metadata.get(key) for key in DOCUMENT_KEYS))
        if document:
            return document
    return None


def extract_house_number(address):
    metadata = _metadata(address)
    number = pick_string(metadata.get('number'), metadata.get('numero'), address.get('address_2'))
    if number:
        return number
    match = HOUSE_NUMBER.search(address.get('address_1') or '')
    return match.group(0) if match else 'S/N'


def compose_customer_name(order):
    for key in ('shipping_address', 'billing_address'):
        address = order.get(key) or {}
        if address.get('first_name'):
            return f"{address['first_name']} {address.get('last_name') or ''}".strip()
    return order.get('email') or 'Cliente'


def map_item(item, warnings):
    metadata = _metadata(item)
    reference = pick_string(*(metadata.get(key) for key in ITEM_REFERENCE_KEYS), item.get('variant_sku'))
    if not reference:
        warnings.append(
            f"Item {item.get('title')} (ID {item.get('id')}) ignorado: "
            "nenhuma referência de SKU/ID do Bling encontrada.")
        return None

    payload = {
        'codigo': reference,
        'descricao': item.get('title'),
        'quantidade': item.get('quantity') or 0,
        'valor': safe_number(_first_present(item.get('unit_price'), item.get('raw_unit_price'))),
    }
    discount = safe_number(item.get('discount_total'))
    if discount > 0:
        payload['desconto'] = discount
    return payload


def build_items_payload(items, warnings):
    mapped = (map_item(item, warnings) for item in items or [])
    return [item for item in mapped if item is not None]


def build_installments(transactions):
    return [
        strip_none({
            'data': _iso_date(t.get('created_at')),
            'vlr': safe_number(t.get('amount')),
            'obs': t.get('currency_code'),
        })
        for t in transactions or []
    ]


def build_customer(order, address, document, is_cpf):
    metadata = _metadata(address)
    order_metadata = _metadata(order)
    billing = order.get('billing_address') or {}

    phone = pick_string(address.get('phone'), billing.get('phone'),
                        order_metadata.get('telefone'), order_metadata.get('phone'))
    postal_code = address.get('postal_code')

    return strip_none({
        'nome': compose_customer_name(order),
        'tipoPessoa': 'F' if is_cpf else 'J',
        'cpf_cnpj': document,
        'email': order.get('email') or pick_string(order_metadata.get('email')),
        'fone': sanitize_document(phone) if phone else None,
        'endereco': address.get('address_1'),
        'numero': extract_house_number(address),
        'complemento': pick_string(metadata.get('complemento'), address.get('address_2')),
        'bairro': pick_string(metadata.get('bairro'), metadata.get('district'), address.get('province')) or 'Centro',
        'cep': sanitize_document(postal_code) if postal_code else None,
        'cidade': address.get('city'),
        'uf': pick_string(metadata.get('uf'), address.get('province'), address.get('country_code')) or 'SP',
        'ie_rg': pick_string(metadata.get('state_registration')) or 'ISENTO',
    })


def build_sale_payload(order, address, document, is_cpf, items, preferences,
                       generate_nfe=False, generate_shipping_label=False):
    if not address.get('address_1'):
        raise OrderValidationError("Endereço (logradouro) é obrigatório para sincronizar o pedido.")

    order_metadata = _metadata(order)
    cliente = build_customer(order, address, document, is_cpf)

    shipping_methods = order.get('shipping_methods') or []
    shipping_method = shipping_methods[0] if shipping_methods else {}
    shipping_metadata = _metadata(shipping_method)
    freight = safe_number(order['shipping_total'] if order.get('shipping_total') is not None
                          else shipping_method.get('amount'))
    discount = safe_number(order.get('discount_total'))

    payload = {
        'numeroPedidoLoja': order.get('id'),
        'numero': order.get('display_id'),
        'situacao': 'Atendido',
        'data': _iso_date(order.get('created_at')),
        'cliente': cliente,
        'itens': items,
        'vlr_frete': freight if freight > 0 else None,
        'vlr_desconto': discount if discount > 0 else None,
        'parcelas': build_installments(order.get('transactions')),
        'observacoes': order_metadata.get('observacoes'),
        'observacoesInternas': order_metadata.get('observacoes_internas'),
        'total': safe_number(order.get('total')),
        'natureza_operacao': order_metadata.get('natureza_operacao'),
    }

    if preferences['orders']['generate_nf'] or generate_nfe:
        payload['gerar_nfe'] = 'S'
    if generate_shipping_label:
        payload['gerar_etiqueta'] = 'S'

    payload['transporte'] = strip_none({
        'transportadora': shipping_method.get('name'),
        'servico_correios': pick_string(shipping_metadata.get('service_code')),
        'tipo_frete': pick_string(shipping_metadata.get('shipping_type')),
        'dados_etiqueta': strip_none({
            'nome': cliente.get('nome'),
            'endereco': cliente.get('endereco'),
            'numero': cliente.get('numero'),
            'complemento': cliente.get('complemento'),
            'municipio': cliente.get('cidade'),
            'uf': cliente.get('uf'),
            'cep': cliente.get('cep'),
            'bairro': cliente.get('bairro'),
        }),
    })
    return strip_none(payload)


def extract_sale_id(response):
    data = response.get('data') if isinstance(response, dict) else None
    if not isinstance(data, dict):
        data = response if isinstance(response, dict) else {}
    for key in ('id', 'numero'):
        value = data.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def sale_status(sale):
    situacao = sale.get('situacao') if isinstance(sale, dict) else None
    if isinstance(situacao, dict):
        situacao = situacao.get('valor')
    if isinstance(situacao, bool):
        return None
    return situacao if isinstance(situacao, (int, str)) else None


class OrderSyncEngine:
    def __init__(self, token_manager, platform, repository=None, product_reconciler=None):
        self.token_manager = token_manager
        self.platform = platform
        self.repository = repository or ConfigRepository()
        self.product_reconciler = product_reconciler

    def _load_order(self, order_id):
        if self.platform is None or self.platform.orders is None:
            raise ConfigurationError("Serviço de pedidos da plataforma não está disponível.")
        order = self.platform.orders.retrieve_order(order_id, relations=ORDER_RELATIONS)
        if not order:
            raise NotFoundError(f"Pedido {order_id} não encontrado.")
        return order

    def _check_not_synced(self, order, force):
        previous = (_metadata(order).get('bling') or {}).get('sale_id') \
            or self.repository.synced_sale_id(order['id'])
        if previous and not force:
            raise ConfigurationError(
                f"Pedido {order['id']} já foi enviado ao Bling (venda {previous}). "
                "Use force=true para reenviar.",
                details={'bling_sale_id': previous})

    def build_payload(self, order, preferences, warnings, generate_nfe=False, generate_shipping_label=False):
        address = order.get('shipping_address') or order.get('billing_address')
        if not address:
            raise OrderValidationError("Pedido sem endereço. Endereço de entrega ou faturamento é obrigatório.")

        document = extract_document(order, address)
        if not document:
            raise OrderValidationError("CPF ou CNPJ obrigatório para sincronizar o pedido com o Bling.")

        digits = sanitize_document(document)
        is_cpf = len(digits) == 11
        if is_cpf and not is_valid_cpf(digits):
            raise OrderValidationError("CPF informado é inválido.")
        if not is_cpf and not is_valid_cnpj(digits):
            raise OrderValidationError("CNPJ informado é inválido.")

        items = build_items_payload(order.get('items'), warnings)
        if not items:
            raise OrderValidationError("Nenhum item do pedido possui SKU ou ID associado no Bling.")

        return build_sale_payload(order, address, digits, is_cpf, items, preferences,
                                  generate_nfe=generate_nfe, generate_shipping_label=generate_shipping_label)

    def _persist_metadata(self, order, sale_id, payload, response, warnings, synced_at):
        metadata = dict(_metadata(order))
        bling = dict(metadata.get('bling') or {})
        bling.update({
            'sale_id': sale_id,
            'last_sync_at': synced_at,
            'last_payload': payload,
            'last_response': response,
            'warnings': list(warnings),
        })
        metadata['bling'] = bling
        self.platform.orders.update_order(order['id'], {'metadata': metadata})

    def sync_order(self, order_id, generate_nfe=False, generate_shipping_label=False, force=False):
        order = self._load_order(order_id)

        preferences = self.repository.get_preferences()
        if not preferences['orders']['enabled'] or not preferences['orders']['send_to_bling']:
            raise ConfigurationError("Sincronização de pedidos com o Bling está desativada nas preferências.")

        warnings = []
        payload = self.build_payload(order, preferences, warnings, generate_nfe=generate_nfe,
                                     generate_shipping_label=generate_shipping_label)

        self._check_not_synced(order, force)
        if not self.repository.claim_order(order['id']):
            raise ConfigurationError(f"Pedido {order['id']} já está sendo sincronizado com o Bling.")

        try:
            client = self.token_manager.create_authorized_client()
            response = client.create_sale(payload)
        except BlingAPIError as e:
            self.repository.release_order(order['id'])
            status = f" (status {e.upstream_status})" if e.upstream_status is not None else ''
            logger.error(f"Falha ao enviar pedido {order['id']} para o Bling: {e.message}{status}")
            raise
        except Exception:
            self.repository.release_order(order['id'])
            raise

        sale_id = extract_sale_id(response)
        self.repository.complete_order(order['id'], sale_id)
        synced_at = utcnow().isoformat() + 'Z'

        if preferences['inventory']['enabled'] and preferences['inventory']['bidirectional'] \
                and self.product_reconciler is not None:
            try:
                self.product_reconciler.sync_products_to_platform()
            except Exception as e:
                logger.warning(f"Stock refresh after order {order['id']} failed: {e}")
                warnings.append(f"Falha ao atualizar o estoque na loja após enviar o pedido: {e}")

        try:
            self._persist_metadata(order, sale_id, payload, response, warnings, synced_at)
        except Exception as e:
            logger.error(f"Sale {sale_id} created but order {order['id']} metadata update failed: {e}")
            warnings.append(f"Venda criada no Bling, mas falha ao gravar os dados no pedido: {e}")

        logger.info(f"Pedido {order['id']} sincronizado com sucesso no Bling"
                    f"{f' (ID {sale_id})' if sale_id else ''}.")

        summary = {
            'total_items': len(payload['itens']),
            'total_amount': payload.get('total', 0),
            'freight_amount': payload.get('vlr_frete', 0),
            'bling_sale_id': sale_id,
            'synced_at': synced_at,
        }
        return {'summary': summary, 'payload': payload, 'response': response, 'warnings': warnings}

    def pull_order_statuses(self, limit=STATUS_PULL_BATCH):
        """
        Mirrors the Bling sale situation onto open platform orders that were
        already sent. Delivered completes the order and cancelled cancels it;
        either one stops further polling for that order. A failure on one order
        becomes a warning and the rest are still checked.
        """
        summary = {'checked': 0, 'updated': 0, 'completed': 0, 'canceled': 0}
        preferences = self.repository.get_preferences()
        if not preferences['orders']['enabled'] or not preferences['orders']['receive_from_bling']:
            return {'summary': summary, 'warnings': [STATUS_PULL_DISABLED_WARNING]}
        if self.platform is None or self.platform.orders is None:
            raise ConfigurationError("Serviço de pedidos da plataforma não está disponível.")

        orders = self.platform.orders.list_orders({'status': OPEN_ORDER_STATUSES}, limit=limit) or []
        linked = [o for o in orders
                  if (_metadata(o).get('bling') or {}).get('sale_id')
                  and not (_metadata(o).get('bling') or {}).get('completed')]
        warnings = []
        if not linked:
            return {'summary': summary, 'warnings': warnings}

        client = self.token_manager.create_authorized_client()
        for order in linked:
            metadata = dict(_metadata(order))
            bling = dict(metadata['bling'])
            summary['checked'] += 1
            try:
                status = sale_status(client.get_sale(bling['sale_id']))
            except BlingAPIError as e:
                logger.error(f"Could not read Bling sale {bling['sale_id']} for order {order['id']}: {e.message}")
                warnings.append(f"Falha ao consultar a venda {bling['sale_id']} do pedido {order['id']}: {e.message}")
                continue

            updates = {}
            if str(status) == str(SALE_DELIVERED):
                updates['status'] = 'completed'
                bling['completed'] = True
            elif str(status) == str(SALE_CANCELED):
                updates['status'] = 'canceled'
                bling['completed'] = True
            elif status == bling.get('status'):
                continue

            bling['status'] = status
            bling['status_updated_at'] = utcnow().isoformat() + 'Z'
            metadata['bling'] = bling
            updates['metadata'] = metadata
            try:
                self.platform.orders.update_order(order['id'], updates)
            except Exception as e:
                logger.error(f"Order {order['id']} status update from Bling failed: {e}")
                warnings.append(f"Falha ao atualizar o status do pedido {order['id']}: {e}")
                continue

            summary['updated'] += 1
            if updates.get('status') == 'completed':
                summary['completed'] += 1
            elif updates.get('status') == 'canceled':
                summary['canceled'] += 1
            logger.info(f"Order {order['id']} status updated from Bling (situacao {status}).")

        return {'summary': summary, 'warnings': warnings}
