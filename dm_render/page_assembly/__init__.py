from .assembler import AssembledDocument, MergedDocumentWriter, Page, PageAssembler

__all__ = ["AssembledDocument", "MergedDocumentWriter", "Page", "PageAssembler"]
