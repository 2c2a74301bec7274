"""Answer queries from records loaded out of zone files."""

from __future__ import annotations

from typing import IO, Optional, Union

import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import dns.tokenizer
from dns.zonefile import Reader, RRSetsReaderManager

__all__ = ["Matcher"]

_DEFAULT_TTL = 3600

_Key = tuple[dns.name.Name, dns.rdatatype.RdataType, dns.rdataclass.RdataClass]


class Matcher:
    """Maps (name, type, class) questions to the records of loaded zones.

    Names compare case-insensitively.
    """

    def __init__(self) -> None:
        self._records: dict[_Key, list[dns.rrset.RRset]] = {}

    def load_file(self, path: str) -> None:
        """Load records from the zone file at ``path``."""
        with open(path, encoding="utf-8") as fh:
            self.load(fh)

    def load(self, stream: Union[IO[str], IO[bytes]]) -> None:
        """Load records from a zone-file stream.

        Records without a TTL get 3600 unless a ``$TTL`` directive says
        otherwise. Raises ``dns.exception.SyntaxError`` on malformed input.
        """
        text = stream.read()
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        manager = RRSetsReaderManager(dns.name.root, False, dns.rdataclass.IN)
        with manager.writer(True) as txn:
            tokenizer = dns.tokenizer.Tokenizer(text, "<input>")
            Reader(tokenizer, dns.rdataclass.IN, txn, default_ttl=_DEFAULT_TTL).read()
        for rrset in manager.rrsets:
            key = (rrset.name, rrset.rdtype, rrset.rdclass)
            self._records.setdefault(key, []).append(rrset)

    def search(
        self,
        name: Union[str, dns.name.Name],
        qtype: Union[str, int],
        qclass: Union[str, int] = dns.rdataclass.IN,
    ) -> list[dns.rrset.RRset]:
        """Return the record sets that answer the question, possibly none."""
        if isinstance(name, str):
            name = dns.name.from_text(name)
        key = (
            name,
            dns.rdatatype.RdataType.make(qtype),
            dns.rdataclass.RdataClass.make(qclass),
        )
        return list(self._records.get(key, ()))

    def reply(self, query: dns.message.Message) -> Optional[dns.message.Message]:
        """Build a response to ``query`` from loaded records.

        Returns None if no question in the query has a match.
        """
        response: Optional[dns.message.Message] = None
        for question in query.question:
            found = self.search(question.name, question.rdtype, question.rdclass)
            if found:
                if response is None:
                    response = dns.message.make_response(query)
                response.answer.extend(found)
        return response