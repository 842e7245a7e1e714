from __future__ import annotations
from typing import AsyncIterator, Awaitable, Callable, cast

import asyncio
import logging
from pyasn1.type import univ, tag, namedtype
from pyasn1.codec.ber import decoder, encoder
from pyasn1.error import PyAsn1Error, SubstrateUnderrunError
from pyasn1_modules import rfc2251
from .backend import Backend
from .bridge import (
    BindAttempt,
    ResultCode,
    SearchEntry,
    authenticate,
    handle_search,
)
from .config import Config
from .exceptions import MalformedFilterError

logger = logging.getLogger(__name__)


# rfc2251 declares these three as constructed, on the wire they are primitive
class UnbindRequest(univ.Null):
    tagSet = univ.Null.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatSimple, 2)
    )


class DelRequest(rfc2251.LDAPDN):
    tagSet = rfc2251.LDAPDN.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatSimple, 10)
    )


class AbandonRequest(rfc2251.MessageID):
    tagSet = rfc2251.MessageID.tagSet.tagImplicitly(
        tag.Tag(tag.tagClassApplication, tag.tagFormatSimple, 16)
    )


def _op(name: str, asn1Object) -> namedtype.NamedType:
    return namedtype.NamedType(name, asn1Object)


class LDAPMessage(univ.Sequence):
    componentType = namedtype.NamedTypes(
        namedtype.NamedType("messageID", rfc2251.MessageID()),
        namedtype.NamedType(
            "protocolOp",
            univ.Choice(
                componentType=namedtype.NamedTypes(
                    _op("bindRequest", rfc2251.BindRequest()),
                    _op("bindResponse", rfc2251.BindResponse()),
                    _op("unbindRequest", UnbindRequest()),
                    _op("searchRequest", rfc2251.SearchRequest()),
                    _op("searchResEntry", rfc2251.SearchResultEntry()),
                    _op("searchResDone", rfc2251.SearchResultDone()),
                    _op("searchResRef", rfc2251.SearchResultReference()),
                    _op("modifyRequest", rfc2251.ModifyRequest()),
                    _op("modifyResponse", rfc2251.ModifyResponse()),
                    _op("addRequest", rfc2251.AddRequest()),
                    _op("addResponse", rfc2251.AddResponse()),
                    _op("delRequest", DelRequest()),
                    _op("delResponse", rfc2251.DelResponse()),
                    _op("modDNRequest", rfc2251.ModifyDNRequest()),
                    _op("modDNResponse", rfc2251.ModifyDNResponse()),
                    _op("compareRequest", rfc2251.CompareRequest()),
                    _op("compareResponse", rfc2251.CompareResponse()),
                    _op("abandonRequest", AbandonRequest()),
                    _op("extendedReq", rfc2251.ExtendedRequest()),
                    _op("extendedResp", rfc2251.ExtendedResponse()),
                )
            ),
        ),
        namedtype.OptionalNamedType(
            "controls",
            rfc2251.Controls().subtype(
                implicitTag=tag.Tag(
                    tag.tagClassContext, tag.tagFormatConstructed, 0
                )
            ),
        ),
    )


# requests the bridge refuses, with the response each one expects
UNSUPPORTED_REQUESTS = {
    "modifyRequest": "modifyResponse",
    "addRequest": "addResponse",
    "delRequest": "delResponse",
    "modDNRequest": "modDNResponse",
    "compareRequest": "compareResponse",
    "extendedReq": "extendedResp",
}


def _text(value: univ.OctetString) -> str:
    return value.asOctets().decode("utf-8", "replace")


_FILTER_ESCAPES = {
    ord("\\"): "\\5c",
    ord("*"): "\\2a",
    ord("("): "\\28",
    ord(")"): "\\29",
    0: "\\00",
}


def _value(value: univ.OctetString) -> str:
    return _text(value).translate(_FILTER_ESCAPES)


def filter_to_string(choice: univ.Choice) -> str:
    """
    Render a decoded search filter in the RFC 4515 string form,
    e.g. ``(&(cn=alice)(memberOf=cn=ipmi))``
    """
    op = choice.getName()
    item = choice.getComponent()
    if op in ("and", "or"):
        sign = "&" if op == "and" else "|"
        return f"({sign}{''.join(filter_to_string(f) for f in item)})"
    if op == "not":
        return f"(!{filter_to_string(item)})"
    if op == "present":
        return f"({_text(item)}=*)"
    if op == "substrings":
        initial = final = ""
        middle: list[str] = []
        for substring in item["substrings"]:
            kind = substring.getName()
            value = _value(substring.getComponent())
            if kind == "initial":
                initial = value
            elif kind == "final":
                final = value
            else:
                middle.append(value)
        pattern = "*".join([initial, *middle, final])
        return f"({_text(item['type'])}={pattern})"
    if op == "extensibleMatch":
        lhs = _text(item["type"]) if item["type"].isValue else ""
        if item["dnAttributes"]:
            lhs += ":dn"
        if item["matchingRule"].isValue:
            lhs += f":{_text(item['matchingRule'])}"
        return f"({lhs}:={_value(item['matchValue'])})"
    sign = {
        "equalityMatch": "=",
        "greaterOrEqual": ">=",
        "lessOrEqual": "<=",
        "approxMatch": "~=",
    }[op]
    attribute = _text(item["attributeDesc"])
    return f"({attribute}{sign}{_value(item['assertionValue'])})"


def encode_result(
    msgid: int, op: str, result_code=0, matched_dn="", diag=""
) -> bytes:
    """Encode an LDAPResult shaped response named `op`"""
    lm = LDAPMessage()
    lm["messageID"] = msgid
    result = lm["protocolOp"][op]
    result["resultCode"] = int(result_code)
    result["matchedDN"] = matched_dn.encode()
    result["errorMessage"] = diag.encode()
    return encoder.encode(lm)


def encode_bind_response(msgid: int, result=0, matchedDN="", diag=""):
    return encode_result(msgid, "bindResponse", result, matchedDN, diag)


def encode_search_result_entry(
    msgid: int, dn: str, attributes: dict[str, str | list[str]]
) -> bytes:
    """Encode a SearchResultEntry response"""
    lm = LDAPMessage()
    lm["messageID"] = msgid
    sre = lm["protocolOp"]["searchResEntry"]
    sre["objectName"] = dn.encode()
    for idx, (attr_type, values) in enumerate(attributes.items()):
        attr = sre["attributes"][idx]
        attr["type"] = attr_type.encode()
        for value in values if isinstance(values, list) else [values]:
            attr["vals"].append(value.encode())
    return encoder.encode(lm)


def encode_search_result_done(
    msgid: int, result_code=0, matched_dn="", diag=""
):
    return encode_result(msgid, "searchResDone", result_code, matched_dn, diag)


# --- Connection handler ---
class LDAPProtocol:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: Config,
        backend: Backend,
    ):
        self.reader = reader
        self.writer = writer
        self.config = config
        self.backend = backend
        self.addr = writer.get_extra_info("peername")

    async def run(self):
        try:
            async for lm in self._parse_messages():
                if not await self._handle_message(lm):
                    break
        except ConnectionError as e:
            logger.debug("%s: %s", self.addr, e)
        finally:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except ConnectionError:
                pass

    async def _parse_messages(self) -> AsyncIterator[LDAPMessage]:
        buf = b""
        while chunk := await self.reader.read(4096):
            buf += chunk
            while buf:
                try:
                    lm, buf = cast(
                        tuple[LDAPMessage, bytes],
                        decoder.decode(buf, asn1Spec=LDAPMessage()),
                    )
                except SubstrateUnderrunError:
                    break  # need more data
                except PyAsn1Error as e:
                    logger.warning(
                        "%s: can not decode request %s (%s)",
                        self.addr,
                        buf[:16].hex(" "),
                        type(e).__name__,
                    )
                    return
                yield lm

    async def _handle_message(self, lm: LDAPMessage) -> bool:
        """
        Returns False when the client asked to close the connection
        """
        msgid = int(lm["messageID"])
        op = lm["protocolOp"]
        name = op.getName()
        if name == "unbindRequest":
            logger.debug("%s: unbind", self.addr)
            return False
        if name == "abandonRequest":
            # requests are answered in order, there is nothing in flight
            logger.debug("%s: abandon %d", self.addr, int(op.getComponent()))
            return True
        if name == "bindRequest":
            responses = [await self._bind(msgid, op.getComponent())]
        elif name == "searchRequest":
            responses = self._search(msgid, op.getComponent())
        elif name in UNSUPPORTED_REQUESTS:
            logger.warning("%s: %s refused", self.addr, name)
            responses = [
                encode_result(
                    msgid,
                    UNSUPPORTED_REQUESTS[name],
                    ResultCode.unwillingToPerform,
                    diag=f"{name} is not supported",
                )
            ]
        else:
            logger.warning("%s: unexpected %s ignored", self.addr, name)
            return True
        for response in responses:
            self.writer.write(response)
        await self.writer.drain()
        return True

    async def _bind(self, msgid: int, request: rfc2251.BindRequest) -> bytes:
        name = _text(request["name"])
        authentication = request["authentication"]
        if authentication.getName() != "simple":
            logger.warning(
                "%s: %s bind for %r refused",
                self.addr,
                authentication.getName(),
                name,
            )
            return encode_bind_response(
                msgid,
                result=ResultCode.authMethodNotSupported,
                diag="only simple authentication is supported",
            )
        # passed on as bytes, the backend gets exactly what the client sent
        password = authentication["simple"].asOctets()
        outcome = await authenticate(
            self.config, self.backend, BindAttempt(name, password)
        )
        return encode_bind_response(
            msgid, result=outcome.result_code, diag=outcome.diagnostic
        )

    def _search(
        self, msgid: int, request: rfc2251.SearchRequest
    ) -> list[bytes]:
        filter_string = filter_to_string(request["filter"])
        logger.debug("%s: search %s", self.addr, filter_string)
        try:
            responses = handle_search(self.config, filter_string)
        except MalformedFilterError as e:
            logger.warning("%s: %s", self.addr, e)
            return [
                encode_search_result_done(
                    msgid, result_code=ResultCode.protocolError, diag=str(e)
                )
            ]
        return [
            (
                encode_search_result_entry(
                    msgid, dn=response.dn, attributes=response.attributes
                )
                if isinstance(response, SearchEntry)
                else encode_search_result_done(
                    msgid,
                    result_code=response.result_code,
                    diag=response.diagnostic,
                )
            )
            for response in responses
        ]


def client_handler(
    config: Config, backend: Backend
) -> Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]:
    async def handle_client(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        await LDAPProtocol(reader, writer, config, backend).run()

    return handle_client
