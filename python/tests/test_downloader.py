"""
Unit tests for watchlist sources: download, OFAC and UN parsing, and search
"""

import io
import zipfile
import pytest
from pathlib import Path
from unittest.mock import Mock, patch

import requests

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from downloader import (
    OFACSource,
    UNSource,
    FetchError,
    ParseError,
    build_sources,
)
from config_manager import ConfigManager
from phonetic import phonetic_match
from watchlist_models import (
    EntityType,
    MatchedField,
    SanctionedEntity,
    EntityAlias,
    FLAG_EXACT_MATCH,
    FLAG_ALIAS_MATCH,
    FLAG_ROMANIZATION_MATCH,
)


OFAC_CLASSIC_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<sdnList xmlns="http://tempuri.org/sdnList.xsd">
  <publshInformation><Publish_Date>01/02/2026</Publish_Date></publshInformation>
  <sdnEntry>
    <uid>36</uid>
    <firstName>Ahmed</firstName>
    <lastName>Testman</lastName>
    <title>Commander</title>
    <sdnType>Individual</sdnType>
    <remarks>Test record</remarks>
    <programList><program>SDGT</program><program>IRGC</program></programList>
    <akaList>
      <aka><uid>1001</uid><type>a.k.a.</type><category>strong</category><lastName>Al Testman</lastName></aka>
      <aka uid="1002" type="f.k.a." category="weak"><firstName>Ahmad</firstName><lastName>Testmann</lastName></aka>
    </akaList>
    <addressList>
      <address><uid>201</uid><address1>12 Main St</address1><city>Tehran</city><country>Iran</country></address>
    </addressList>
    <nationalityList><nationality><country>Iran</country></nationality></nationalityList>
    <dateOfBirthList><dateOfBirthItem><dateOfBirth>01 Jan 1970</dateOfBirth></dateOfBirthItem></dateOfBirthList>
  </sdnEntry>
  <sdnEntry>
    <uid>37</uid>
    <lastName>ACME TRADING LLC</lastName>
    <sdnType>Entity</sdnType>
    <programList><program>SDGT</program></programList>
  </sdnEntry>
  <sdnEntry>
    <uid>38</uid>
    <sdnType>Entity</sdnType>
  </sdnEntry>
  <sdnEntry>
    <uid>36</uid>
    <lastName>Duplicate Record</lastName>
  </sdnEntry>
</sdnList>
"""

OFAC_ENHANCED_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<sanctionsData xmlns="https://sanctionslistservice.ofac.treas.gov/api/PublicationPreview/exports/ENHANCED_XML">
  <entities>
    <entity id="12345">
      <generalInfo>
        <entityType refId="600">Individual</entityType>
        <remarks>Enhanced record</remarks>
      </generalInfo>
      <sanctionsPrograms><sanctionsProgram refId="1">SDGT</sanctionsProgram></sanctionsPrograms>
      <names>
        <name>
          <isPrimary>true</isPrimary>
          <aliasType/>
          <isLowQuality>false</isLowQuality>
          <translations>
            <translation>
              <formattedFirstName>Wei</formattedFirstName>
              <formattedLastName>Wang</formattedLastName>
              <formattedFullName>WANG, Wei</formattedFullName>
            </translation>
            <translation>
              <formattedFullName>\xe7\x8e\x8b\xe4\xbc\x9f</formattedFullName>
            </translation>
          </translations>
        </name>
        <name>
          <isPrimary>false</isPrimary>
          <aliasType refId="1400">A.K.A.</aliasType>
          <isLowQuality>true</isLowQuality>
          <translations>
            <translation><formattedFullName>WONG, Wai</formattedFullName></translation>
          </translations>
        </name>
      </names>
      <addresses>
        <address>
          <country refId="11">China</country>
          <translations><translation><addressParts>
            <addressPart><type refId="1">ADDRESS1</type><value>1 Harbour Rd</value></addressPart>
            <addressPart><type refId="2">CITY</type><value>Shanghai</value></addressPart>
          </addressParts></translation></translations>
        </address>
      </addresses>
    </entity>
    <entity id="12346">
      <generalInfo><entityType>Entity</entityType></generalInfo>
      <names>
        <name>
          <isPrimary>false</isPrimary>
          <translations><translation><formattedFullName>NO PRIMARY CO</formattedFullName></translation></translations>
        </name>
      </names>
    </entity>
  </entities>
</sanctionsData>
"""

UN_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<CONSOLIDATED_LIST dateGenerated="2026-01-02T00:00:00">
  <INDIVIDUALS>
    <INDIVIDUAL>
      <DATAID>6908555</DATAID>
      <FIRST_NAME>RI</FIRST_NAME>
      <SECOND_NAME>WON</SECOND_NAME>
      <THIRD_NAME>HO</THIRD_NAME>
      <UN_LIST_TYPE>DPRK</UN_LIST_TYPE>
      <REFERENCE_NUMBER>KPi.033</REFERENCE_NUMBER>
      <LISTED_ON>2016-11-30</LISTED_ON>
      <NAME_ORIGINAL_SCRIPT>\xe6\x9d\x8e\xe5\x85\x83\xe6\xb5\xa9</NAME_ORIGINAL_SCRIPT>
      <COMMENTS1>Official of the Ministry of State Security</COMMENTS1>
      <NATIONALITY><VALUE>Democratic People's Republic of Korea</VALUE></NATIONALITY>
      <INDIVIDUAL_ALIAS><QUALITY>Good</QUALITY><ALIAS_NAME>Ri Won-ho</ALIAS_NAME></INDIVIDUAL_ALIAS>
      <INDIVIDUAL_ALIAS><QUALITY>Low</QUALITY><ALIAS_NAME/></INDIVIDUAL_ALIAS>
      <INDIVIDUAL_ADDRESS><CITY>Pyongyang</CITY><COUNTRY>DPRK</COUNTRY></INDIVIDUAL_ADDRESS>
      <INDIVIDUAL_DATE_OF_BIRTH><TYPE_OF_DATE>EXACT</TYPE_OF_DATE><DATE>1964-07-17</DATE></INDIVIDUAL_DATE_OF_BIRTH>
      <INDIVIDUAL_DATE_OF_BIRTH><TYPE_OF_DATE>BETWEEN</TYPE_OF_DATE><FROM_YEAR>1960</FROM_YEAR><TO_YEAR>1962</TO_YEAR></INDIVIDUAL_DATE_OF_BIRTH>
    </INDIVIDUAL>
    <INDIVIDUAL>
      <FIRST_NAME>MISSING ID</FIRST_NAME>
    </INDIVIDUAL>
  </INDIVIDUALS>
  <ENTITIES>
    <ENTITY>
      <DATAID>110404</DATAID>
      <FIRST_NAME>KOREA MINING DEVELOPMENT TRADING CORPORATION</FIRST_NAME>
      <UN_LIST_TYPE>DPRK</UN_LIST_TYPE>
      <REFERENCE_NUMBER>KPe.001</REFERENCE_NUMBER>
      <ENTITY_ALIAS><QUALITY>Good</QUALITY><ALIAS_NAME>KOMID</ALIAS_NAME></ENTITY_ALIAS>
      <ENTITY_ADDRESS><STREET>Central District</STREET><CITY>Pyongyang</CITY></ENTITY_ADDRESS>
    </ENTITY>
    <ENTITY>
      <DATAID>110405</DATAID>
      <FIRST_NAME>ODD REFERENCE COMPANY</FIRST_NAME>
      <REFERENCE_NUMBER>not-a-reference</REFERENCE_NUMBER>
    </ENTITY>
  </ENTITIES>
</CONSOLIDATED_LIST>
"""


def _zip(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def ofac():
    return OFACSource(url='https://example.test/sdn.xml')


@pytest.fixture
def un():
    return UNSource(url='https://example.test/consolidated.xml')


# ============================================
# DOWNLOAD
# ============================================

class TestFetch:
    """Tests for WatchlistSource.fetch"""

    @patch('downloader.requests.get')
    def test_fetch_returns_body(self, mock_get, ofac):
        mock_get.return_value = Mock(content=OFAC_CLASSIC_XML, raise_for_status=Mock())

        assert ofac.fetch(timeout=5) == OFAC_CLASSIC_XML
        mock_get.assert_called_once_with('https://example.test/sdn.xml', timeout=5)

    @patch('downloader.requests.get')
    def test_fetch_network_error(self, mock_get, ofac):
        mock_get.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(FetchError) as exc_info:
            ofac.fetch()
        assert exc_info.value.source == 'OFAC'

    @patch('downloader.requests.get')
    def test_fetch_http_error(self, mock_get, un):
        response = Mock(content=b'')
        response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        mock_get.return_value = response

        with pytest.raises(FetchError, match="UN"):
            un.fetch()

    def test_load_file(self, un, tmp_path):
        path = tmp_path / 'consolidated.xml'
        path.write_bytes(UN_XML)

        entities = un.load_file(path)
        assert {e.uid for e in entities} == {'6908555', '110404', '110405'}

    def test_load_missing_file(self, un, tmp_path):
        with pytest.raises(ParseError):
            un.load_file(tmp_path / 'missing.xml')


# ============================================
# OFAC PARSING
# ============================================

class TestOFACClassic:
    """Tests for the classic sdnList format"""

    def test_parses_valid_records_only(self, ofac):
        entities = ofac.parse(OFAC_CLASSIC_XML)

        # uid 38 has no name, the second uid 36 is a duplicate
        assert [e.uid for e in entities] == ['36', '37']

    def test_individual_fields(self, ofac):
        entity = ofac.parse(OFAC_CLASSIC_XML)[0]

        assert entity.source == 'OFAC'
        assert entity.entity_type is EntityType.INDIVIDUAL
        assert entity.primary_name == 'Ahmed Testman'
        assert entity.first_name == 'Ahmed'
        assert entity.last_name == 'Testman'
        assert entity.title == 'Commander'
        assert entity.programs == ('SDGT', 'IRGC')
        assert entity.nationalities == ('Iran',)
        assert entity.dates_of_birth == ('01 Jan 1970',)
        assert entity.addresses[0].full_address == '12 Main St, Tehran, Iran'

    def test_aliases_from_elements_and_attributes(self, ofac):
        aliases = ofac.parse(OFAC_CLASSIC_XML)[0].aliases

        assert aliases[0] == EntityAlias(name='Al Testman', category='strong', alias_type='a.k.a.')
        assert aliases[1] == EntityAlias(name='Ahmad Testmann', category='weak', alias_type='f.k.a.')

    def test_organization(self, ofac):
        entity = ofac.parse(OFAC_CLASSIC_XML)[1]
        assert entity.entity_type is EntityType.ORGANIZATION
        assert entity.primary_name == 'ACME TRADING LLC'


class TestOFACEnhanced:
    """Tests for the enhanced sanctionsData format"""

    def test_primary_name_and_aliases(self, ofac):
        entity = ofac.parse(OFAC_ENHANCED_XML)[0]

        assert entity.uid == '12345'
        assert entity.entity_type is EntityType.INDIVIDUAL
        assert entity.primary_name == 'WANG, Wei'
        assert entity.first_name == 'Wei'
        assert entity.last_name == 'Wang'
        assert [a.name for a in entity.aliases] == ['王伟', 'WONG, Wai']
        assert entity.aliases[1].category == 'weak'
        assert entity.aliases[1].alias_type == 'A.K.A.'

    def test_programs_addresses_remarks(self, ofac):
        entity = ofac.parse(OFAC_ENHANCED_XML)[0]

        assert entity.programs == ('SDGT',)
        assert entity.remarks == 'Enhanced record'
        assert entity.addresses[0].full_address == '1 Harbour Rd, Shanghai, China'

    def test_first_name_promoted_without_primary(self, ofac):
        entity = ofac.parse(OFAC_ENHANCED_XML)[1]
        assert entity.primary_name == 'NO PRIMARY CO'
        assert entity.aliases == ()
        assert entity.entity_type is EntityType.ORGANIZATION

    def test_zip_archive(self, ofac):
        raw = _zip({'readme.txt': 'ignore me', 'SDN_ENHANCED.XML': OFAC_ENHANCED_XML})
        assert [e.uid for e in ofac.parse(raw)] == ['12345', '12346']


class TestOFACErrors:
    """Tests for whole-document failures"""

    def test_malformed_xml(self, ofac):
        with pytest.raises(ParseError):
            ofac.parse(b'<sdnList><sdnEntry>')

    def test_empty_document(self, ofac):
        with pytest.raises(ParseError):
            ofac.parse(b'')

    def test_unexpected_root(self, ofac):
        with pytest.raises(ParseError, match="root element"):
            ofac.parse(b'<somethingElse/>')

    def test_zip_without_xml(self, ofac):
        with pytest.raises(ParseError, match="No XML"):
            ofac.parse(_zip({'readme.txt': 'nothing here'}))

    def test_corrupt_zip(self, ofac):
        with pytest.raises(ParseError):
            ofac.parse(b'PK\x03\x04 not really a zip')

    def test_external_entities_not_resolved(self, ofac, tmp_path):
        secret = tmp_path / 'secret.txt'
        secret.write_text('TOPSECRET')
        raw = (
            f'<?xml version="1.0"?><!DOCTYPE sdnList [<!ENTITY xxe SYSTEM "file://{secret}">]>'
            f'<sdnList><sdnEntry><uid>1</uid><lastName>&xxe;</lastName></sdnEntry></sdnList>'
        ).encode()

        for entity in ofac.parse(raw):
            assert 'TOPSECRET' not in entity.primary_name


# ============================================
# UN PARSING
# ============================================

class TestUN:
    """Tests for the UN Consolidated List"""

    def test_individual(self, un):
        entity = un.parse(UN_XML)[0]

        assert entity.uid == '6908555'
        assert entity.source == 'UN'
        assert entity.entity_type is EntityType.INDIVIDUAL
        assert entity.primary_name == 'RI WON HO'
        assert entity.first_name == 'RI'
        assert entity.last_name == 'WON HO'
        assert entity.programs == ('DPRK',)
        assert entity.list_type == 'DPRK'
        assert entity.reference_number == 'KPi.033'
        assert entity.regime_code == 'KP'
        assert entity.listed_on == '2016-11-30'
        assert entity.nationalities == ("Democratic People's Republic of Korea",)
        assert entity.dates_of_birth == ('1964-07-17', '1960-1962')
        assert entity.addresses[0].full_address == 'Pyongyang, DPRK'

    def test_aliases_include_original_script(self, un):
        aliases = un.parse(UN_XML)[0].aliases

        assert [a.name for a in aliases] == ['Ri Won-ho', '李元浩']
        assert aliases[0].category == 'Good'
        assert aliases[1].category == 'original_script'

    def test_entity(self, un):
        entities = un.parse(UN_XML)
        komid = next(e for e in entities if e.uid == '110404')

        assert komid.entity_type is EntityType.ORGANIZATION
        assert komid.primary_name == 'KOREA MINING DEVELOPMENT TRADING CORPORATION'
        assert komid.first_name is None
        assert [a.name for a in komid.aliases] == ['KOMID']
        assert komid.regime_code == 'KP'

    def test_unrecognized_reference_has_no_regime(self, un):
        odd = next(e for e in un.parse(UN_XML) if e.uid == '110405')
        assert odd.reference_number == 'not-a-reference'
        assert odd.regime_code is None

    def test_record_without_id_skipped(self, un):
        assert len(un.parse(UN_XML)) == 3

    def test_unexpected_root(self, un):
        with pytest.raises(ParseError):
            un.parse(b'<sdnList/>')


# ============================================
# SEARCH
# ============================================

@pytest.fixture
def entities():
    return [
        SanctionedEntity(
            uid='1', source='OFAC', entity_type=EntityType.INDIVIDUAL,
            primary_name='Ahmed Testman',
            aliases=(EntityAlias(name='Abu Test'),)
        ),
        SanctionedEntity(
            uid='2', source='OFAC', entity_type=EntityType.ORGANIZATION,
            primary_name='Acme Trading LLC'
        ),
        SanctionedEntity(
            uid='3', source='OFAC', entity_type=EntityType.INDIVIDUAL,
            primary_name='王伟'
        ),
        SanctionedEntity(
            uid='4', source='OFAC', entity_type=EntityType.INDIVIDUAL,
            primary_name='Li Ming'
        ),
    ]


class TestSearch:
    """Tests for WatchlistSource.search"""

    def test_exact_primary_name(self, ofac, entities):
        results = ofac.search('ahmed testman', 0.8, entities)

        assert results[0].entity.uid == '1'
        assert results[0].confidence == 1.0
        assert results[0].matched_field is MatchedField.NAME
        assert FLAG_EXACT_MATCH in results[0].flags

    def test_alias_match(self, ofac, entities):
        results = ofac.search('Abu Test', 0.8, entities)

        assert results[0].matched_field is MatchedField.ALIAS
        assert results[0].matched_value == 'Abu Test'
        assert FLAG_ALIAS_MATCH in results[0].flags

    def test_one_candidate_per_entity(self, ofac, entities):
        results = ofac.search('Ahmed Testman', 0.0, entities)
        uids = [c.entity.uid for c in results]
        assert len(uids) == len(set(uids))

    def test_sorted_by_confidence(self, ofac, entities):
        results = ofac.search('Acme Trading', 0.0, entities)
        confidences = [c.confidence for c in results]
        assert confidences == sorted(confidences, reverse=True)

    def test_latin_term_matches_chinese_name(self, ofac, entities):
        results = ofac.search('Wong Wai', 0.8, entities)

        assert results[0].entity.uid == '3'
        assert results[0].confidence == 1.0
        assert FLAG_ROMANIZATION_MATCH in results[0].flags

    def test_chinese_term_matches_latin_name(self, ofac, entities):
        results = ofac.search('李明', 0.8, entities)

        assert results[0].entity.uid == '4'
        assert FLAG_ROMANIZATION_MATCH in results[0].flags

    def test_threshold_filters(self, ofac, entities):
        assert ofac.search('Zqxv Plokij', 0.8, entities) == []

    def test_flags_only_computed_for_kept_matches(self, ofac, entities):
        with patch('downloader.phonetic_match', wraps=phonetic_match) as mock_phonetic:
            assert ofac.search('Zqxv Plokij', 0.8, entities) == []
            assert mock_phonetic.call_count == 0

            results = ofac.search('Ahmed Testman', 0.8, entities)

        assert [c.entity.uid for c in results] == ['1']
        assert mock_phonetic.call_count == 1

    def test_blank_term(self, ofac, entities):
        assert ofac.search('   ', 0.0, entities) == []


class TestBuildSources:
    """Tests for build_sources"""

    def test_disabled_source_skipped(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("sources:\n  un:\n    enabled: false\n  ofac:\n    weight: 0.9\n")

        ConfigManager.reset_instance()
        sources = build_sources(ConfigManager(str(config_file)))

        assert [s.name for s in sources] == ['OFAC']
        assert sources[0].weight == 0.9
